from __future__ import annotations

import os

import pytest

from tab_recorder import config as config_module
from tab_recorder import web_server
from tab_recorder.session_store import STATE_ACTIVE


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


@pytest.fixture
async def client(aiohttp_client, manager):
    return await aiohttp_client(web_server.build_app(manager))


async def _start(client) -> str:
    response = await client.post("/api/recording/start")
    assert response.status == 200
    payload = await response.json()
    assert payload["success"] is True
    return payload["recordingId"]


@pytest.mark.asyncio
async def test_http_recording_roundtrip(client, manager):
    b1 = os.urandom(1024)
    b2 = os.urandom(2048)

    response = await client.post("/api/recording/start")
    started = await response.json()
    recording_id = started["recordingId"]
    assert started["filename"] == f"recording-{recording_id}.webm"

    response = await client.post(f"/api/recording/{recording_id}/chunk", data=b1)
    assert response.status == 200
    assert await response.json() == {
        "success": True,
        "chunkNumber": 1,
        "chunkSize": 1024,
        "totalSize": 1024,
    }

    response = await client.post(f"/api/recording/{recording_id}/chunk", data=b2)
    ack = await response.json()
    assert ack["chunkNumber"] == 2
    assert ack["totalSize"] == 3072

    response = await client.post(f"/api/recording/{recording_id}/stop")
    assert response.status == 200
    stats = await response.json()
    assert stats["success"] is True
    assert stats["recordingId"] == recording_id
    assert stats["totalSize"] == 3072
    assert stats["chunkCount"] == 2
    assert stats["downloadUrl"] == f"/api/recording/{recording_id}/download"
    assert isinstance(stats["duration"], (int, float))
    assert "flushTimedOut" not in stats

    response = await client.get(stats["downloadUrl"])
    assert response.status == 200
    assert response.headers["Content-Disposition"] == f'attachment; filename="{started["filename"]}"'
    assert int(response.headers["Content-Length"]) == 3072
    assert await response.read() == b1 + b2


@pytest.mark.asyncio
async def test_unknown_recording_returns_404(client):
    for method, path in (
        ("POST", "/api/recording/missing/chunk"),
        ("POST", "/api/recording/missing/stop"),
        ("GET", "/api/recording/missing/download"),
        ("DELETE", "/api/recording/missing"),
    ):
        response = await client.request(method, path, data=b"x" if path.endswith("chunk") else None)
        assert response.status == 404, path
        payload = await response.json()
        assert payload == {"success": False, "error": "Recording not found"}


@pytest.mark.asyncio
async def test_chunk_after_stop_is_rejected(client, manager):
    recording_id = await _start(client)
    await client.post(f"/api/recording/{recording_id}/chunk", data=b"abc")
    await client.post(f"/api/recording/{recording_id}/stop")

    response = await client.post(f"/api/recording/{recording_id}/chunk", data=b"late")
    assert response.status == 400
    assert (await response.json())["success"] is False

    response = await client.post(f"/api/recording/{recording_id}/stop")
    assert response.status == 400

    session = manager.get(recording_id)
    assert session.chunk_count == 1
    assert session.filepath.read_bytes() == b"abc"


@pytest.mark.asyncio
async def test_download_before_stop_is_rejected(client):
    recording_id = await _start(client)

    response = await client.get(f"/api/recording/{recording_id}/download")

    assert response.status == 400
    assert await response.json() == {"success": False, "error": "Recording not yet completed"}


@pytest.mark.asyncio
async def test_download_missing_file_returns_404(client, manager):
    recording_id = await _start(client)
    await client.post(f"/api/recording/{recording_id}/stop")
    manager.get(recording_id).filepath.unlink()

    response = await client.get(f"/api/recording/{recording_id}/download")

    assert response.status == 404
    assert (await response.json())["error"] == "Recording file not found"


@pytest.mark.asyncio
async def test_delete_removes_session_and_file(client, manager):
    recording_id = await _start(client)
    await client.post(f"/api/recording/{recording_id}/chunk", data=b"abc")
    filepath = manager.get(recording_id).filepath

    response = await client.delete(f"/api/recording/{recording_id}")
    assert response.status == 200
    assert await response.json() == {"success": True}
    assert not filepath.exists()

    response = await client.get(f"/api/recording/{recording_id}/download")
    assert response.status == 404
    response = await client.delete(f"/api/recording/{recording_id}")
    assert response.status == 404


@pytest.mark.asyncio
async def test_listing_and_health(client):
    first = await _start(client)
    second = await _start(client)
    await client.post(f"/api/recording/{second}/stop")

    response = await client.get("/api/recordings")
    payload = await response.json()
    states = {entry["recordingId"]: entry["state"] for entry in payload["recordings"]}
    assert states == {first: STATE_ACTIVE, second: "completed"}

    response = await client.get("/api/health")
    health = await response.json()
    assert health["status"] == "running"
    assert health["activeRecordings"] == 1
    assert health["totalRecordings"] == 2

    response = await client.get("/healthz")
    assert response.status == 200
    assert (await response.text()).strip() == "ok"


@pytest.mark.asyncio
async def test_oversized_chunk_rejected(monkeypatch, aiohttp_client):
    monkeypatch.setenv("MAX_CHUNK_BYTES", "1024")
    _reset_config_state(monkeypatch)

    app = web_server.build_app()
    manager = app[web_server.RECORDING_MANAGER_KEY]
    client = await aiohttp_client(app)
    recording_id = await _start(client)

    response = await client.post(f"/api/recording/{recording_id}/chunk", data=b"x" * 2048)
    assert response.status == 413

    response = await client.post(f"/api/recording/{recording_id}/chunk", data=b"x" * 512)
    assert response.status == 200
    assert manager.get(recording_id).chunk_count == 1


@pytest.mark.asyncio
async def test_cors_headers_and_preflight(client):
    response = await client.get("/api/health", headers={"Origin": "http://example.test"})
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert "DELETE" in response.headers["Access-Control-Allow-Methods"]

    response = await client.options(
        "/api/recording/start",
        headers={"Origin": "http://example.test", "Access-Control-Request-Method": "POST"},
    )
    assert response.status == 204
    assert response.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.asyncio
async def test_cors_disabled_when_origin_blank(monkeypatch, tmp_path, aiohttp_client, manager):
    config_path = tmp_path / "config.yaml"
    config_path.write_text('web_server:\n  cors_origin: ""\n')
    monkeypatch.setenv("TAB_RECORDER_CONFIG", str(config_path))
    _reset_config_state(monkeypatch)
    client = await aiohttp_client(web_server.build_app(manager))

    response = await client.get("/api/health", headers={"Origin": "http://example.test"})

    assert response.status == 200
    assert "Access-Control-Allow-Origin" not in response.headers


@pytest.mark.asyncio
async def test_shutdown_closes_active_recordings(aiohttp_client, manager):
    client = await aiohttp_client(web_server.build_app(manager))
    recording_id = await _start(client)
    session = manager.get(recording_id)

    await client.close()

    assert session.writer.closed is True
    assert session.interrupted is True


def test_resolve_web_server_runtime_defaults():
    assert web_server._resolve_web_server_runtime({}) == ("0.0.0.0", 3000)
    assert web_server._resolve_web_server_runtime(
        {"web_server": {"listen_host": " 127.0.0.1 ", "listen_port": "8080"}}
    ) == ("127.0.0.1", 8080)
    assert web_server._resolve_web_server_runtime(
        {"web_server": {"listen_port": "bogus"}}
    ) == ("0.0.0.0", 3000)
