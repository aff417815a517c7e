import io

import pytest

from cocoatrack.core.storage import LocalStorage, build_storage_key


def test_storage_key_is_content_addressed():
    assert build_storage_key("coop-1", "ab" * 32, "exports/parcelles.zip") == f"coop-1/{'ab' * 32}/parcelles.zip"
    assert build_storage_key(None, "cd" * 32, "p.kml").startswith("no-cooperative/")


async def test_local_storage_roundtrip(tmp_path):
    storage = LocalStorage(str(tmp_path))
    key = build_storage_key("coop-1", "ab" * 32, "p.geojson")

    assert not await storage.exists(key)
    await storage.save(io.BytesIO(b"{}"), key)

    assert await storage.exists(key)
    assert await storage.read(key) == b"{}"
    assert "key=coop-1%2F" in await storage.get_url(key)

    await storage.delete(key)
    assert not await storage.exists(key)


async def test_local_storage_refuses_keys_outside_root(tmp_path):
    storage = LocalStorage(str(tmp_path / "root"))
    with pytest.raises(ValueError):
        await storage.save(io.BytesIO(b"x"), "../escape.txt")
