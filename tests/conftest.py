"""Shared fixtures: throwaway EC keys and a canned App Store Connect transport."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Union

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

ISSUER_ID = "57246542-96fe-1a63-e053-0824d011072a"
KEY_ID = "2X9R4HXF34"
API_BASE = "https://api.appstoreconnect.apple.com"


@pytest.fixture(scope="session")
def ec_private_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def private_key_pem(ec_private_key: ec.EllipticCurvePrivateKey) -> str:
    return ec_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(scope="session")
def public_key_pem(ec_private_key: ec.EllipticCurvePrivateKey) -> str:
    return ec_private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def resource(resource_type: str, resource_id: str, **attributes: Any) -> Dict[str, Any]:
    return {"type": resource_type, "id": resource_id, "attributes": attributes}


def page(data: List[Dict[str, Any]], next_link: Optional[str] = None) -> Dict[str, Any]:
    links: Dict[str, Any] = {"self": "ignored"}
    if next_link:
        links["next"] = next_link
    return {"data": data, "links": links}


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Optional[Any] = None, text: Optional[str] = None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode("utf-8")

    def json(self) -> Any:
        return json.loads(self.text)


class FakeSession:
    """Serves canned responses keyed by absolute URL and records every call."""

    def __init__(self) -> None:
        self.routes: Dict[str, List[Union[FakeResponse, Exception]]] = {}
        self.calls: List[Dict[str, Any]] = []

    def add(self, path: str, *responses: Union[FakeResponse, Dict[str, Any], Exception]) -> None:
        url = path if path.startswith("http") else API_BASE + path
        queue = self.routes.setdefault(url, [])
        for entry in responses:
            queue.append(FakeResponse(payload=entry) if isinstance(entry, dict) else entry)

    def requested_urls(self) -> List[str]:
        return [call["url"] for call in self.calls]

    def request(self, method, url, headers=None, params=None, timeout=None, **_kwargs):
        self.calls.append(
            {"method": method, "url": url, "headers": headers, "params": params, "timeout": timeout}
        )
        queue = self.routes.get(url)
        if not queue:
            return FakeResponse(
                404,
                {"errors": [{"status": "404", "code": "NOT_FOUND", "detail": f"no route for {url}"}]},
            )
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, Exception):
            raise entry
        return entry


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()
