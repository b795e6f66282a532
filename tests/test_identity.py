import base64
import time

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from identity import IdentityBridge, IdentityProviderUnavailable, InvalidExternalToken
from main import create_app

PROJECT = "towertrack-test"
PROVIDER_SECRET = "provider-signing-secret"


def _jwks():
    key = base64.urlsafe_b64encode(PROVIDER_SECRET.encode()).decode().rstrip("=")
    return {"keys": [{"kty": "oct", "kid": "k1", "alg": "HS256", "k": key}]}


def _provider_token(secret=PROVIDER_SECRET, **claims):
    now = int(time.time())
    payload = {
        "iss": f"https://securetoken.google.com/{PROJECT}",
        "aud": PROJECT,
        "iat": now,
        "exp": now + 300,
        "sub": "uid-1",
        "email": "Alice@X.com",
        "email_verified": True,
        "name": "Alice",
    }
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256", headers={"kid": "k1"})


@pytest.fixture
def bridge():
    return IdentityBridge(PROJECT, key_source=_jwks, algorithms=["HS256"])


def test_exchange_returns_provider_identity(bridge):
    claim = bridge.exchange(_provider_token())

    assert claim.email == "Alice@X.com"
    assert claim.name == "Alice"


@pytest.mark.parametrize(
    "token",
    [
        _provider_token(secret="wrong-secret"),
        _provider_token(aud="someone-else"),
        _provider_token(iss="https://securetoken.google.com/other"),
        _provider_token(exp=int(time.time()) - 60),
        _provider_token(email_verified=False),
        "",
    ],
)
def test_exchange_rejects_bad_tokens(bridge, token):
    with pytest.raises(InvalidExternalToken):
        bridge.exchange(token)


def test_signing_keys_are_cached(bridge):
    calls = []

    def source():
        calls.append(1)
        return _jwks()

    bridge.key_source = source
    bridge.exchange(_provider_token())
    bridge.exchange(_provider_token())

    assert len(calls) == 1


def test_jwt_route_exchanges_external_token(settings, database, gateway, bridge):
    app = create_app(settings=settings, database=database, payment_gateway=gateway, identity_bridge=bridge)

    with TestClient(app) as client:
        missing = client.post("/jwt", json={"email": "alice@x.com"})
        rejected = client.post("/jwt", json={"id_token": _provider_token(secret="wrong-secret")})
        accepted = client.post("/jwt", json={"id_token": _provider_token()})

        assert missing.status_code == 400
        assert rejected.status_code == 401
        assert accepted.status_code == 200
        assert client.get("/users/role/alice@x.com").json() == {"role": "user"}


def test_jwt_route_reports_unreachable_provider(settings, database, gateway):
    def unreachable():
        raise IdentityProviderUnavailable("connection refused")

    bridge = IdentityBridge(PROJECT, key_source=unreachable, algorithms=["HS256"])
    app = create_app(settings=settings, database=database, payment_gateway=gateway, identity_bridge=bridge)

    with TestClient(app) as client:
        response = client.post("/jwt", json={"id_token": _provider_token()})

    assert response.status_code == 503
