"""
Tests: evidence blob store, signed URLs and the evidence endpoints.
"""

import hashlib
import io
from urllib.parse import parse_qs, urlparse

import pytest
from werkzeug.datastructures import FileStorage

from compliance.core.exceptions import NotFoundError, ValidationError
from compliance.integrations.evidence_store import (
    get_evidence_store,
    sign,
    verify_signature,
)


def _file(content=b"fridge at 3C", filename="fridge photo.jpg"):
    return FileStorage(stream=io.BytesIO(content), filename=filename)


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# ═════════════════════════════════════════════════════════════════════════════
# 1. STORE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_upload_returns_reference_and_digest():
    store = get_evidence_store()
    result = store.upload("capa-7", "capa", _file())

    assert result.reference.startswith("evidence/capa-7/capa/")
    assert result.reference.endswith("_fridge_photo.jpg")
    assert result.sha256 == hashlib.sha256(b"fridge at 3C").hexdigest()
    assert result.size_bytes == 12
    assert store.exists(result.reference)
    with store.open(result.reference) as fh:
        assert fh.read() == b"fridge at 3C"


@pytest.mark.unit
def test_uploads_never_overwrite():
    store = get_evidence_store()
    first = store.upload("audit-1", "i1", _file(b"one"))
    second = store.upload("audit-1", "i1", _file(b"two"))
    assert first.reference != second.reference


@pytest.mark.unit
def test_empty_upload_is_rejected():
    with pytest.raises(ValidationError):
        get_evidence_store().upload("capa-7", "capa", _file(b""))


@pytest.mark.unit
def test_unsafe_owner_segment_is_rejected():
    with pytest.raises(ValidationError):
        get_evidence_store().upload("..", "capa", _file())


@pytest.mark.unit
@pytest.mark.parametrize("reference", [
    "evidence/../../etc/passwd",
    "uploads/capa-1/x.jpg",
    "",
])
def test_references_outside_the_store_are_not_found(reference):
    store = get_evidence_store()
    assert not store.exists(reference)
    with pytest.raises(NotFoundError):
        store.open(reference)


# ═════════════════════════════════════════════════════════════════════════════
# 2. SIGNED URLS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_resolve_signs_a_short_lived_url(app):
    store = get_evidence_store()
    ref = store.upload("capa-7", "capa", _file()).reference

    signed = store.resolve(ref, now=1_000)
    params = _query(signed.url)

    assert signed.expires == 1_000 + app.config["EVIDENCE_URL_TTL_SECONDS"]
    assert params["ref"] == ref
    assert verify_signature(ref, params["expires"], params["sig"], now=1_000)
    assert not verify_signature(ref, params["expires"], params["sig"], now=signed.expires + 1)
    assert not verify_signature(ref, params["expires"], "0" * 64, now=1_000)
    assert not verify_signature("evidence/x/y/other.jpg", params["expires"], params["sig"],
                                now=1_000)


@pytest.mark.unit
def test_signature_rejects_garbage_expiry():
    assert not verify_signature("evidence/a/b/c", "soon", sign("evidence/a/b/c", 10))


@pytest.mark.unit
def test_resolve_missing_reference():
    with pytest.raises(NotFoundError):
        get_evidence_store().resolve("evidence/a/b/missing.jpg")


# ═════════════════════════════════════════════════════════════════════════════
# 3. API
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.integration
def test_upload_then_fetch_through_signed_link(client, org, headers):
    res = client.post(
        "/api/v1/evidence",
        data={"file": (io.BytesIO(b"jpeg-bytes"), "after.jpg"),
              "owner_id": "audit-3", "item_id": "i1"},
        content_type="multipart/form-data",
        headers=headers(org.auditor),
    )
    assert res.status_code == 201
    ref = res.get_json()["reference"]

    res = client.get("/api/v1/evidence/url", query_string={"ref": ref},
                     headers=headers(org.auditor))
    assert res.status_code == 200
    url = res.get_json()["url"]

    res = client.get(url)
    assert res.status_code == 200
    assert res.data == b"jpeg-bytes"


@pytest.mark.integration
def test_tampered_link_is_forbidden(client):
    res = client.get("/api/v1/evidence/file",
                     query_string={"ref": "evidence/a/b/c.jpg", "expires": "9999999999",
                                   "sig": "deadbeef"})
    assert res.status_code == 403


@pytest.mark.integration
def test_upload_requires_caller(client):
    res = client.post("/api/v1/evidence",
                      data={"file": (io.BytesIO(b"x"), "a.jpg")},
                      content_type="multipart/form-data")
    assert res.status_code == 401


@pytest.mark.integration
def test_capa_evidence_accepts_multipart_file(client, org, headers, make_capa):
    capa = make_capa()
    res = client.post(
        f"/api/v1/capas/{capa.id}/evidence",
        data={"file": (io.BytesIO(b"clean vent"), "vent.png")},
        content_type="multipart/form-data",
        headers=headers(org.branch_manager),
    )
    assert res.status_code == 201
    urls = res.get_json()["evidence_urls"]
    assert len(urls) == 1
    assert urls[0].startswith(f"evidence/capa-{capa.id}/capa/")
    assert get_evidence_store().exists(urls[0])
