"""End-to-end tests for the /api/v1/stream endpoints."""

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from conftest import TRACK_SIZE, media_bytes
from tracklock.core.config import DEFAULT_OBFUSCATION_KEY
from tracklock.core.obfuscation import StreamObfuscator
from tracklock.crud.catalog import InMemoryTrackCatalog, TrackRecord
from tracklock.main import create_app

MEDIA = media_bytes(TRACK_SIZE)
LEGACY_MEDIA = media_bytes(300 * 1024)


class TestTokenGrant:
    def test_requires_session(self, client: TestClient) -> None:
        assert client.get("/api/v1/stream/token/t1").status_code == 401

    def test_issues_token_and_key_material(self, client: TestClient, auth_headers, app_tokens) -> None:
        response = client.get("/api/v1/stream/token/t1", headers=auth_headers)
        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"token", "nonce", "keyMaterial"}
        assert app_tokens.verify(body["token"], "t1", 60_000).valid
        assert "no-store" in response.headers["cache-control"]

    def test_key_material_differs_per_session(self, client: TestClient, auth_headers) -> None:
        first = client.get("/api/v1/stream/token/t1", headers=auth_headers).json()
        second = client.get("/api/v1/stream/token/t1", headers=auth_headers).json()
        assert first["nonce"] != second["nonce"]
        assert first["keyMaterial"] != second["keyMaterial"]

    def test_session_cookie_accepted(self, client: TestClient, make_session) -> None:
        client.cookies.set("lobby_session", make_session())
        assert client.get("/api/v1/stream/token/t1").status_code == 200

    def test_session_for_other_lobby_rejected(self, client: TestClient, make_session) -> None:
        headers = {"Authorization": f"Bearer {make_session(lobbies=['lobby-b'])}"}
        assert client.get("/api/v1/stream/token/t1", headers=headers).status_code == 401

    def test_unprotected_track_any_session(self, client: TestClient, make_session) -> None:
        headers = {"Authorization": f"Bearer {make_session(lobbies=['lobby-b'])}"}
        assert client.get("/api/v1/stream/token/open", headers=headers).status_code == 200

    def test_unknown_track(self, client: TestClient, auth_headers) -> None:
        assert client.get("/api/v1/stream/token/nope", headers=auth_headers).status_code == 404


@pytest.fixture
def numeric_lobby_client(settings, clock):
    catalog = InMemoryTrackCatalog([TrackRecord("num", "0", "track.mp3", protected=True, preview=True)])
    with TestClient(create_app(settings=settings, catalog=catalog, clock=clock)) as test_client:
        yield test_client


class TestPreloadGrant:
    def test_preview_track(self, client: TestClient, app_tokens) -> None:
        response = client.get("/api/v1/stream/preload/t1")
        assert response.status_code == 200
        body = response.json()
        assert body["expiresIn"] == 300
        assert app_tokens.verify(body["token"], "t1:lobby-a", 300_000).valid

    def test_non_preview_track_looks_missing(self, client: TestClient) -> None:
        assert client.get("/api/v1/stream/preload/t2").status_code == 404
        assert client.get("/api/v1/stream/preload/unknown").status_code == 404

    def test_digit_only_lobby_gets_no_grant(self, numeric_lobby_client: TestClient) -> None:
        assert numeric_lobby_client.get("/api/v1/stream/preload/num").status_code == 404

    def test_segment_token_is_not_a_grant(self, numeric_lobby_client: TestClient) -> None:
        """A segment-0 token carries the same subject a lobby "0" grant would."""
        tokens = numeric_lobby_client.app.state.services.tokens
        response = numeric_lobby_client.get(
            "/api/v1/stream/manifest/num", params={"preload": tokens.issue_segment("num", 0)}
        )
        assert response.status_code == 401


class TestManifest:
    def test_protected_track_needs_session_or_grant(self, client: TestClient) -> None:
        assert client.get("/api/v1/stream/manifest/t1").status_code == 401

    def test_session_for_other_lobby_rejected(self, client: TestClient, make_session) -> None:
        headers = {"Authorization": f"Bearer {make_session(lobbies=['lobby-b'])}"}
        assert client.get("/api/v1/stream/manifest/t1", headers=headers).status_code == 401

    def test_manifest_with_session(self, client: TestClient, auth_headers, clock) -> None:
        response = client.get("/api/v1/stream/manifest/t1", headers=auth_headers)
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store, no-cache, must-revalidate, private"
        body = response.json()
        assert body["resourceId"] == "t1"
        assert body["totalSize"] == TRACK_SIZE
        assert body["segmentSize"] == 81920
        assert body["expiresAt"] == clock.now + 55_000
        assert [(s["index"], s["start"], s["end"]) for s in body["segments"]] == [
            (0, 0, 81919),
            (1, 81920, 163839),
            (2, 163840, TRACK_SIZE - 1),
        ]

    def test_manifest_with_preload_grant(self, client: TestClient, app_tokens) -> None:
        grant = app_tokens.issue_preload("t1", "lobby-a")
        response = client.get("/api/v1/stream/manifest/t1", params={"preload": grant})
        assert response.status_code == 200

    def test_grant_for_other_track_rejected(self, client: TestClient, app_tokens) -> None:
        grant = app_tokens.issue_preload("t2", "lobby-a")
        response = client.get("/api/v1/stream/manifest/t1", params={"preload": grant})
        assert response.status_code == 401

    def test_expired_grant_rejected(self, client: TestClient, app_tokens, clock) -> None:
        grant = app_tokens.issue_preload("t1", "lobby-a")
        clock.advance(300_001)
        response = client.get("/api/v1/stream/manifest/t1", params={"preload": grant})
        assert response.status_code == 401

    def test_unknown_track(self, client: TestClient, auth_headers) -> None:
        assert client.get("/api/v1/stream/manifest/nope", headers=auth_headers).status_code == 404

    def test_missing_media_object(self, client: TestClient) -> None:
        assert client.get("/api/v1/stream/manifest/ghost").status_code == 404


class TestSegment:
    def _manifest(self, client: TestClient, headers) -> dict:
        return client.get("/api/v1/stream/manifest/t1", headers=headers).json()

    def test_serves_segment_bytes(self, client: TestClient, auth_headers) -> None:
        segment = self._manifest(client, auth_headers)["segments"][1]
        response = client.get(
            "/api/v1/stream/segment/t1/1", params={"t": segment["token"]}, headers=auth_headers
        )
        assert response.status_code == 200
        assert response.content == MEDIA[81920:163840]
        assert response.headers["x-segment-index"] == "1"
        assert response.headers["x-segment-start"] == "81920"
        assert response.headers["x-segment-end"] == "163839"
        assert response.headers["x-total-size"] == str(TRACK_SIZE)
        assert response.headers["content-type"] == "audio/mpeg"

    def test_last_partial_segment(self, client: TestClient, auth_headers) -> None:
        segment = self._manifest(client, auth_headers)["segments"][2]
        response = client.get(
            "/api/v1/stream/segment/t1/2", params={"t": segment["token"]}, headers=auth_headers
        )
        assert response.content == MEDIA[163840:]

    def test_token_for_other_index(self, client: TestClient, auth_headers) -> None:
        segment = self._manifest(client, auth_headers)["segments"][0]
        response = client.get(
            "/api/v1/stream/segment/t1/1", params={"t": segment["token"]}, headers=auth_headers
        )
        assert response.status_code == 403
        assert response.json()["detail"] == "Forbidden"

    def test_missing_token(self, client: TestClient, auth_headers) -> None:
        assert client.get("/api/v1/stream/segment/t1/0", headers=auth_headers).status_code == 403

    def test_expired_token(self, client: TestClient, auth_headers, clock) -> None:
        segment = self._manifest(client, auth_headers)["segments"][0]
        clock.advance(60_001)
        response = client.get(
            "/api/v1/stream/segment/t1/0", params={"t": segment["token"]}, headers=auth_headers
        )
        assert response.status_code == 403

    def test_preload_grant_not_enough(self, client: TestClient, app_tokens) -> None:
        token = app_tokens.issue_segment("t1", 0)
        grant = app_tokens.issue_preload("t1", "lobby-a")
        response = client.get("/api/v1/stream/segment/t1/0", params={"t": token, "preload": grant})
        assert response.status_code == 401

    def test_unprotected_track_needs_only_token(self, client: TestClient, app_tokens) -> None:
        token = app_tokens.issue_segment("open", 0)
        response = client.get("/api/v1/stream/segment/open/0", params={"t": token})
        assert response.status_code == 200
        assert response.content == MEDIA[:81920]

    def test_index_past_end(self, client: TestClient, auth_headers, app_tokens) -> None:
        token = app_tokens.issue_segment("t1", 3)
        response = client.get("/api/v1/stream/segment/t1/3", params={"t": token}, headers=auth_headers)
        assert response.status_code == 404

    def test_non_numeric_index(self, client: TestClient, auth_headers) -> None:
        response = client.get("/api/v1/stream/segment/t1/abc", params={"t": "x.y"}, headers=auth_headers)
        assert response.status_code == 400


class TestFullStream:
    def _get(self, client: TestClient, headers, token: str, range_header=None):
        if range_header:
            headers = {**headers, "Range": range_header}
        return client.get("/api/v1/stream/full/t1", params={"t": token}, headers=headers)

    def test_explicit_range(self, client: TestClient, auth_headers, app_tokens) -> None:
        response = self._get(client, auth_headers, app_tokens.issue_stream("t1"), "bytes=1000-1999")
        assert response.status_code == 206
        assert response.headers["content-range"] == f"bytes 1000-1999/{TRACK_SIZE}"
        assert len(response.content) == 1000
        plain = StreamObfuscator(DEFAULT_OBFUSCATION_KEY).transform(response.content)
        assert plain == MEDIA[1000:2000]
        assert response.content != MEDIA[1000:2000]

    def test_open_range_is_capped(self, client: TestClient, auth_headers, app_tokens) -> None:
        response = self._get(client, auth_headers, app_tokens.issue_stream("t1"), "bytes=0-")
        assert response.status_code == 206
        assert len(response.content) == 65536
        assert response.headers["content-range"] == f"bytes 0-65535/{TRACK_SIZE}"

    def test_no_range_serves_first_chunk(self, client: TestClient, auth_headers, app_tokens) -> None:
        response = self._get(client, auth_headers, app_tokens.issue_stream("t1"))
        assert response.status_code == 206
        assert len(response.content) == 65536
        assert response.headers["content-type"] == "application/octet-stream"

    def test_unsatisfiable_range(self, client: TestClient, auth_headers, app_tokens) -> None:
        response = self._get(client, auth_headers, app_tokens.issue_stream("t1"), f"bytes={TRACK_SIZE}-")
        assert response.status_code == 416
        assert response.headers["content-range"] == f"bytes */{TRACK_SIZE}"

    def test_wrong_track_token(self, client: TestClient, auth_headers, app_tokens) -> None:
        response = self._get(client, auth_headers, app_tokens.issue_stream("t2"))
        assert response.status_code == 403

    def test_requires_session(self, client: TestClient, app_tokens) -> None:
        response = client.get("/api/v1/stream/full/t1", params={"t": app_tokens.issue_stream("t1")})
        assert response.status_code == 401

    def test_session_for_other_lobby_rejected(self, client: TestClient, make_session, app_tokens) -> None:
        """A valid stream token does not stand in for lobby access."""
        headers = {"Authorization": f"Bearer {make_session(lobbies=['lobby-b'])}"}
        response = self._get(client, headers, app_tokens.issue_stream("t1"))
        assert response.status_code == 401

    def test_other_lobby_cannot_obtain_then_use_token(self, client: TestClient, make_session) -> None:
        headers = {"Authorization": f"Bearer {make_session(lobbies=['lobby-b'])}"}
        assert client.get("/api/v1/stream/token/t1", headers=headers).status_code == 401
        assert self._get(client, headers, "").status_code == 401


class TestLegacyStream:
    def test_serves_capped_chunk(self, client: TestClient, auth_headers, app_tokens) -> None:
        token = app_tokens.issue_stream("legacy.mp3")
        response = client.get(
            "/api/v1/stream/media/audio/legacy.mp3", params={"token": token}, headers=auth_headers
        )
        assert response.status_code == 206
        assert response.headers["content-type"] == "audio/mpeg"
        assert response.content == LEGACY_MEDIA[:131072]
        assert response.headers["content-range"] == f"bytes 0-131071/{len(LEGACY_MEDIA)}"

    def test_reason_is_echoed(self, client: TestClient, auth_headers, app_tokens) -> None:
        token = app_tokens.issue_stream("other.mp3")
        response = client.get(
            "/api/v1/stream/media/audio/legacy.mp3", params={"token": token}, headers=auth_headers
        )
        assert response.status_code == 403
        assert response.json()["detail"] == "Invalid token: SubjectMismatch"

    def test_token_required(self, client: TestClient, auth_headers) -> None:
        response = client.get("/api/v1/stream/media/audio/legacy.mp3", headers=auth_headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "Token required"

    def test_missing_file(self, client: TestClient, auth_headers, app_tokens) -> None:
        token = app_tokens.issue_stream("nope.mp3")
        response = client.get(
            "/api/v1/stream/media/audio/nope.mp3", params={"token": token}, headers=auth_headers
        )
        assert response.status_code == 404


class TestOriginAndHeaders:
    @pytest.fixture
    def production_client(self, settings, catalog, clock):
        app = create_app(settings=replace(settings, is_production=True), catalog=catalog, clock=clock)
        with TestClient(app) as test_client:
            yield test_client

    def test_foreign_origin_rejected_in_production(self, production_client: TestClient) -> None:
        response = production_client.get(
            "/api/v1/stream/manifest/open", headers={"Origin": "https://evil.example"}
        )
        assert response.status_code == 403

    def test_missing_origin_rejected_in_production(self, production_client: TestClient) -> None:
        assert production_client.get("/api/v1/stream/manifest/open").status_code == 403

    def test_same_host_allowed_in_production(self, production_client: TestClient) -> None:
        response = production_client.get(
            "/api/v1/stream/manifest/open", headers={"Referer": "http://testserver/lobby"}
        )
        assert response.status_code == 200

    def test_docs_disabled_in_production(self, production_client: TestClient) -> None:
        assert production_client.get("/docs").status_code == 404

    def test_security_headers(self, client: TestClient) -> None:
        response = client.get("/api/v1/stream/manifest/open")
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "DENY"
        assert response.headers["x-robots-tag"] == "noindex, nofollow"
        assert response.headers["referrer-policy"] == "same-origin"

    def test_error_responses_not_cacheable(self, client: TestClient) -> None:
        response = client.get("/api/v1/stream/manifest/nope")
        assert response.status_code == 404
        assert "no-store" in response.headers["cache-control"]
