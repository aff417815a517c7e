from datetime import timedelta

import pytest
from jose import JWTError

from cocoatrack.config import settings
from cocoatrack.core.security import create_access_token, decode_token, validate_file_magic


@pytest.mark.parametrize(
    "content, extension, expected",
    [
        (b"PK\x03\x04rest-of-zip", "zip", True),
        (b"PK\x03\x04rest-of-kmz", "kmz", True),
        (b"<?xml version='1.0'?><kml/>", "zip", False),
        (b"\xef\xbb\xbf  <?xml version='1.0'?><kml/>", "kml", True),
        (b"{\"type\": \"FeatureCollection\"}", "kml", False),
        (b"\n  {\"type\": \"Feature\"}", "geojson", True),
        (b"{}", ".json", True),
        (b"PK\x03\x04", "geojson", False),
    ],
)
def test_validate_file_magic(content, extension, expected):
    assert validate_file_magic(content, extension) is expected


def test_token_carries_user_and_cooperative():
    token = create_access_token("user-1", cooperative_id="coop-1")
    payload = decode_token(token)

    assert payload["sub"] == "user-1"
    assert payload[settings.COOPERATIVE_CLAIM] == "coop-1"


def test_token_without_cooperative():
    payload = decode_token(create_access_token("user-1"))
    assert settings.COOPERATIVE_CLAIM not in payload


def test_expired_token_is_rejected():
    token = create_access_token("user-1", expires_delta=timedelta(minutes=-5))
    with pytest.raises(JWTError):
        decode_token(token)
