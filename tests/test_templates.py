import pytest

from accesshub.errors import ExtractionError, NotFoundError, ValidationError
from accesshub.templates import extract_template

PAGE = 256


def dump_with_pages(size, offsets, fill=0xFF):
    dump = bytearray(size)
    for offset in offsets:
        dump[offset:offset + PAGE] = bytes([fill]) * PAGE
    return bytes(dump)


def test_extracts_two_filled_windows():
    dump = dump_with_pages(600, [0, 256])
    template = extract_template(dump, threshold=40)
    assert len(template) == 512
    assert template == dump[0:256] + dump[256:512]


def test_skips_sparse_windows():
    dump = bytearray(dump_with_pages(1024, [256, 768], fill=0x11))
    dump[0:40] = b"\x01" * 40  # exactly at the threshold, not above it
    template = extract_template(bytes(dump), threshold=40)
    assert template == bytes([0x11]) * 512


def test_one_qualifying_window_is_an_error():
    with pytest.raises(ExtractionError):
        extract_template(dump_with_pages(600, [256]), threshold=40)


def test_trailing_partial_window_is_ignored():
    dump = dump_with_pages(512, [0]) + b"\xff" * 88
    with pytest.raises(ExtractionError):
        extract_template(dump, threshold=40)


async def test_upload_fetch_and_match(services):
    data = bytes(range(256)) * 2
    info = await services.templates.upload(data, "T1")
    assert (info.template_id, info.size) == ("T1", 512)

    assert await services.templates.fetch("T1") == data
    assert await services.templates.match(data) == "T1"
    assert await services.templates.match(b"\x00" * 512) is None


async def test_upload_rejects_wrong_size(services):
    with pytest.raises(ValidationError):
        await services.templates.upload(b"\x01" * 100)


async def test_overwrite_by_id(services):
    await services.templates.upload(b"\x01" * 512, "T1")
    await services.templates.upload(b"\x02" * 512, "T1")
    assert await services.templates.fetch("T1") == b"\x02" * 512
    assert await services.templates.match(b"\x01" * 512) is None


async def test_fetch_unknown_template(services):
    with pytest.raises(NotFoundError):
        await services.templates.fetch("missing")


async def test_extract_and_store_never_stores_partial(services):
    with pytest.raises(ExtractionError):
        await services.templates.extract_and_store(dump_with_pages(600, [0]), "T2")
    with pytest.raises(NotFoundError):
        await services.templates.fetch("T2")

    info = await services.templates.extract_and_store(dump_with_pages(600, [0, 256]), "T2")
    assert info.size == 512
