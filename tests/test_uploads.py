from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory

from flowbroker.shared.services.uploads import (
    cleanup_images,
    parse_multipart_and_save,
    persist_images,
)

BOUNDARY = "----flowbrokerBoundary7MA4YWxk"


def _part(headers: str, data: bytes) -> bytes:
    return f"--{BOUNDARY}\r\n{headers}\r\n\r\n".encode() + data + b"\r\n"


def _body(*parts: bytes) -> bytes:
    return b"".join(parts) + f"--{BOUNDARY}--\r\n".encode()


def test_parses_file_parts_and_strips_trailing_crlf() -> None:
    png = b"\x89PNG\r\n\x1a\nbinary\r\n\r\npayload"
    body = _body(
        _part('Content-Disposition: form-data; name="image"; filename="shot.PNG"\r\nContent-Type: image/png', png),
        _part('Content-Disposition: form-data; name="second"; filename="photo.jpeg"', b"jpeg-bytes"),
    )
    with TemporaryDirectory() as tmpdir:
        image_dir = Path(tmpdir) / "images"
        paths = parse_multipart_and_save(body, BOUNDARY, image_dir)

        assert len(paths) == 2
        first, second = (Path(p) for p in paths)
        assert first.is_absolute() and first.parent == image_dir.resolve()
        assert first.suffix == ".png"
        assert first.read_bytes() == png
        assert second.suffix == ".jpg"
        assert second.read_bytes() == b"jpeg-bytes"


def test_extension_falls_back_to_content_type_then_png() -> None:
    body = _body(
        _part('Content-Disposition: form-data; name="a"; filename="blob"\r\nContent-Type: image/jpeg', b"a"),
        _part('Content-Disposition: form-data; name="b"; filename="blob"', b"b"),
    )
    with TemporaryDirectory() as tmpdir:
        paths = parse_multipart_and_save(body, BOUNDARY, Path(tmpdir))
        assert [Path(p).suffix for p in paths] == [".jpg", ".png"]


def test_malformed_parts_are_skipped() -> None:
    body = _body(
        _part('Content-Disposition: form-data; name="field"', b"no filename here"),
        f"--{BOUNDARY}\r\nno separator at all\r\n".encode(),
        _part('Content-Disposition: form-data; name="ok"; filename="ok.gif"', b"GIF89a"),
    )
    with TemporaryDirectory() as tmpdir:
        paths = parse_multipart_and_save(body, BOUNDARY, Path(tmpdir))
        assert len(paths) == 1
        assert Path(paths[0]).read_bytes() == b"GIF89a"


def test_persist_images_copies_under_fresh_names_and_skips_missing() -> None:
    with TemporaryDirectory() as tmpdir:
        src = Path(tmpdir) / "capture.jpeg"
        src.write_bytes(b"jpeg")
        image_dir = Path(tmpdir) / "images"

        persisted = persist_images([str(src), str(Path(tmpdir) / "missing.png")], image_dir)

        assert len(persisted) == 1
        dest = Path(persisted[0])
        assert dest.parent == image_dir.resolve()
        assert dest.name != src.name
        assert dest.suffix == ".jpg"
        assert dest.read_bytes() == b"jpeg"


def test_cleanup_images_removes_directory_and_tolerates_missing() -> None:
    with TemporaryDirectory() as tmpdir:
        image_dir = Path(tmpdir) / "images"
        image_dir.mkdir()
        (image_dir / "a.png").write_bytes(b"x")

        cleanup_images(image_dir)
        assert not image_dir.exists()
        cleanup_images(image_dir)
