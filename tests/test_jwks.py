import pytest
from fastapi.testclient import TestClient

from tokenwarden.app import create_app
from tokenwarden.service.jwks import PublicKeyPublisher, base64url_to_int, int_to_base64url


def test_standard_exponent_encodes_as_aqab():
    assert int_to_base64url(65537) == "AQAB"


def test_encoding_is_unpadded_and_minimal():
    assert int_to_base64url(0) == "AA"
    assert int_to_base64url(255) == "_w"
    # 0x80 needs no leading sign byte in a JWK
    assert int_to_base64url(0x8000) == "gAA"
    assert "=" not in int_to_base64url(2**2047 + 12345)


def test_negative_values_rejected():
    with pytest.raises(ValueError):
        int_to_base64url(-1)


def test_published_key_decodes_to_exact_numbers(key_store):
    document = PublicKeyPublisher(key_store).publish()
    assert list(document) == ["keys"]
    assert len(document["keys"]) == 1

    jwk = document["keys"][0]
    numbers = key_store.public_key.public_numbers()
    assert jwk["kty"] == "RSA"
    assert jwk["use"] == "sig"
    assert jwk["alg"] == "RS256"
    assert jwk["kid"] == "test-key"
    assert base64url_to_int(jwk["n"]) == numbers.n
    assert base64url_to_int(jwk["e"]) == numbers.e
    assert "d" not in jwk and "p" not in jwk


def test_jwks_endpoint_serves_bare_document():
    client = TestClient(create_app())
    response = client.get("/.well-known/jwks.json")

    assert response.status_code == 200
    body = response.json()
    assert "status" not in body
    assert body["keys"][0]["kid"] == "test-key"
    assert "max-age" in response.headers["Cache-Control"]
