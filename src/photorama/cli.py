from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import typer

from photorama_core import (
    AppConfig,
    FetchFailure,
    ListingMethod,
    Photo,
    PhotoFilter,
    PhotoRepository,
    Tag,
    load_config,
)
from photorama_core.images import decode_image
from photorama_core.storage import ImageCache, PhotoDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = typer.Typer(help="Photorama CLI")
tags_app = typer.Typer(help="Tag commands")
debug_app = typer.Typer(help="Debug commands")
app.add_typer(tags_app, name="tags")
app.add_typer(debug_app, name="debug")

_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    help="Optional JSON/YAML config file path.",
    exists=True,
    dir_okay=False,
    readable=True,
)
_DB_PATH_OPTION = typer.Option(None, "--db-path", help="SQLite DB file path.")
_CACHE_DIR_OPTION = typer.Option(None, "--cache-dir", help="Image cache directory.")
_WAIT_SECONDS = 120.0

T = TypeVar("T")


@app.command("fetch")
def fetch_photos(
    method: ListingMethod = typer.Option(
        ListingMethod.INTERESTING,
        "--method",
        help="Flickr listing to fetch.",
    ),
    config_path: Path | None = _CONFIG_OPTION,
    db_path: Path | None = _DB_PATH_OPTION,
    cache_dir: Path | None = _CACHE_DIR_OPTION,
) -> None:
    """Fetch a Flickr listing and merge it into the local store."""
    config = _resolve_config(config_path, db_path=db_path, cache_dir=cache_dir)
    try:
        repository = PhotoRepository.from_config(config)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc

    with repository:
        result = repository.fetch_photos(method).result(timeout=_WAIT_SECONDS)

    if not result.ok:
        typer.echo(f"fetch failed: {result.error}", err=True)
        raise typer.Exit(code=1)

    photos = result.unwrap()
    typer.echo(_render_photo_table(photos))
    typer.echo(f"fetched={len(photos)} method={method.value}")


@app.command("photos")
def list_photos(
    favorites: bool = typer.Option(False, "--favorites", help="Only list favorite photos."),
    config_path: Path | None = _CONFIG_OPTION,
    db_path: Path | None = _DB_PATH_OPTION,
) -> None:
    """List stored photos sorted by id."""
    config = _resolve_config(config_path, db_path=db_path)
    photo_filter = PhotoFilter.FAVORITES if favorites else PhotoFilter.ALL
    with PhotoDatabase(config.storage.db_path).session() as session:
        photos = session.list_photos(photo_filter)

    typer.echo(_render_photo_table(photos))
    typer.echo(f"photos={len(photos)} filter={photo_filter.value}")


@app.command("image")
def fetch_image(
    photo_id: str = typer.Argument(..., help="Stored photo id."),
    out: Path | None = typer.Option(None, "--out", help="Write the image bytes to this path."),
    config_path: Path | None = _CONFIG_OPTION,
    db_path: Path | None = _DB_PATH_OPTION,
    cache_dir: Path | None = _CACHE_DIR_OPTION,
) -> None:
    """Fetch one photo's image through the cache."""
    config = _resolve_config(config_path, db_path=db_path, cache_dir=cache_dir)
    photo = _require_stored_photo(config, photo_id)
    try:
        repository = PhotoRepository.from_config(config)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc

    with repository:
        result = repository.fetch_image(photo).result(timeout=_WAIT_SECONDS)

    if not result.ok:
        typer.echo(f"image fetch failed: {result.error}", err=True)
        raise typer.Exit(code=1)

    data = result.unwrap()
    info = decode_image(data)
    if out is not None:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(data)
    typer.echo(
        f"image id={photo.id} format={info.format} size={info.width}x{info.height} bytes={len(data)}"
    )


@app.command("favorite")
def favorite_photo(
    photo_id: str = typer.Argument(..., help="Stored photo id."),
    off: bool = typer.Option(False, "--off", help="Clear the favorite flag instead."),
    config_path: Path | None = _CONFIG_OPTION,
    db_path: Path | None = _DB_PATH_OPTION,
) -> None:
    """Mark or unmark a photo as favorite."""
    config = _resolve_config(config_path, db_path=db_path)
    with PhotoDatabase(config.storage.db_path).session() as session:
        photo = _run_edit(lambda: session.set_favorite(photo_id, not off))
        _run_edit(session.commit)
    typer.echo(f"photo id={photo.id} favorite={photo.is_favorite}")


@app.command("view")
def view_photo(
    photo_id: str = typer.Argument(..., help="Stored photo id."),
    config_path: Path | None = _CONFIG_OPTION,
    db_path: Path | None = _DB_PATH_OPTION,
) -> None:
    """Increment a photo's view counter."""
    config = _resolve_config(config_path, db_path=db_path)
    with PhotoDatabase(config.storage.db_path).session() as session:
        photo = _run_edit(lambda: session.record_view(photo_id))
        _run_edit(session.commit)
    typer.echo(f"photo id={photo.id} views={photo.views}")


@tags_app.command("list")
def list_tags(
    config_path: Path | None = _CONFIG_OPTION,
    db_path: Path | None = _DB_PATH_OPTION,
) -> None:
    """List tags sorted by name."""
    config = _resolve_config(config_path, db_path=db_path)
    with PhotoDatabase(config.storage.db_path).session() as session:
        tags = session.list_tags()

    if not tags:
        typer.echo("no tags found")
        return
    for tag in tags:
        typer.echo(_render_tag(tag))


@tags_app.command("create")
def create_tag(
    name: str = typer.Argument(..., help="Tag name."),
    config_path: Path | None = _CONFIG_OPTION,
    db_path: Path | None = _DB_PATH_OPTION,
) -> None:
    """Create a new tag."""
    config = _resolve_config(config_path, db_path=db_path)
    with PhotoDatabase(config.storage.db_path).session() as session:
        tag = _run_edit(lambda: session.create_tag(name))
        _run_edit(session.commit)
    typer.echo(_render_tag(tag))


@tags_app.command("add")
def add_tag(
    photo_id: str = typer.Argument(..., help="Stored photo id."),
    tag_id: str = typer.Argument(..., help="Tag id."),
    config_path: Path | None = _CONFIG_OPTION,
    db_path: Path | None = _DB_PATH_OPTION,
) -> None:
    """Attach a tag to a photo."""
    config = _resolve_config(config_path, db_path=db_path)
    with PhotoDatabase(config.storage.db_path).session() as session:
        photo = _run_edit(lambda: session.tag_photo(photo_id, tag_id))
        _run_edit(session.commit)
    typer.echo(f"photo id={photo.id} tags={','.join(photo.tag_ids) or '-'}")


@tags_app.command("remove")
def remove_tag(
    photo_id: str = typer.Argument(..., help="Stored photo id."),
    tag_id: str = typer.Argument(..., help="Tag id."),
    config_path: Path | None = _CONFIG_OPTION,
    db_path: Path | None = _DB_PATH_OPTION,
) -> None:
    """Detach a tag from a photo."""
    config = _resolve_config(config_path, db_path=db_path)
    with PhotoDatabase(config.storage.db_path).session() as session:
        photo = _run_edit(lambda: session.untag_photo(photo_id, tag_id))
        _run_edit(session.commit)
    typer.echo(f"photo id={photo.id} tags={','.join(photo.tag_ids) or '-'}")


@debug_app.command("storage")
def debug_storage(
    db_path: Path = typer.Option(
        Path("data/storage/photorama.db"),
        "--db-path",
        help="SQLite DB file path.",
    ),
    cache_dir: Path = typer.Option(
        Path("data/cache/images"),
        "--cache-dir",
        help="Image cache directory.",
    ),
) -> None:
    """Run storage smoke test."""
    database = PhotoDatabase(db_path)
    cache = ImageCache(cache_dir)

    cache_key = "debug:storage"
    cache_value = b"smoke_ok"
    cache.put(cache_key, cache_value)
    cache.clear_memory()
    cached_value = cache.get(cache_key)
    cache.delete(cache_key)

    with database.session() as session:
        stored = session.find_photo("debug-photo")
        if stored is None:
            session.add_photo(
                Photo(
                    id="debug-photo",
                    title="storage smoke test",
                    date_taken="2020-01-01T00:00:00",
                    remote_url="https://example.com/debug.jpg",
                )
            )
            _run_edit(session.commit)
            stored = session.find_photo("debug-photo")

    if cached_value != cache_value or stored is None:
        typer.echo("storage smoke test failed", err=True)
        raise typer.Exit(code=1)

    typer.echo("storage ok")


def _resolve_config(
    config_path: Path | None,
    *,
    db_path: Path | None = None,
    cache_dir: Path | None = None,
) -> AppConfig:
    try:
        config = load_config(config_path)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc

    if db_path is not None:
        config.storage.db_path = str(db_path)
    if cache_dir is not None:
        config.caching.directory = str(cache_dir)
    return config


def _require_stored_photo(config: AppConfig, photo_id: str) -> Photo:
    with PhotoDatabase(config.storage.db_path).session() as session:
        photo = session.find_photo(photo_id)
    if photo is None:
        typer.echo(f"unknown photo id: {photo_id}", err=True)
        raise typer.Exit(code=1)
    return photo


def _run_edit(edit: Callable[[], T]) -> T:
    try:
        return edit()
    except (KeyError, ValueError) as exc:
        typer.echo(str(exc).strip("'\""), err=True)
        raise typer.Exit(code=1) from exc
    except FetchFailure as exc:
        typer.echo(f"storage error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _render_photo_table(photos: list[Photo]) -> str:
    if not photos:
        return "no photos found"

    headers = ("id", "taken", "views", "fav", "title")
    rows = [
        (
            photo.id,
            photo.date_taken.strftime("%Y-%m-%d %H:%M"),
            str(photo.views),
            "*" if photo.is_favorite else "",
            _truncate(photo.title or "-", limit=60),
        )
        for photo in photos
    ]

    widths = [
        max(len(headers[column]), *(len(row[column]) for row in rows))
        for column in range(len(headers))
    ]

    def _line(values: tuple[str, ...]) -> str:
        return " | ".join(
            value.ljust(widths[index]) for index, value in enumerate(values)
        )

    divider = "-+-".join("-" * width for width in widths)
    body = [_line(headers), divider]
    body.extend(_line(row) for row in rows)
    return "\n".join(body)


def _render_tag(tag: Tag) -> str:
    return f"{tag.id} {tag.name} photos={len(tag.photo_ids)}"


def _truncate(text: str, *, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[: limit - 3]}..."


def main() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
