import hashlib
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from starlette.testclient import TestClient

from catalog import Catalog
from errors import QueryTimeout
from indexer import IndexCoordinator
from records import Coordinate, MediaMetadata, MediaType


def _extractor(path: Path) -> MediaMetadata:
    data = path.read_bytes()
    lat, lng = data.decode().split(",")[:2]
    return MediaMetadata(
        media_type=MediaType.PHOTO,
        content_hash=hashlib.sha256(data).hexdigest(),
        coordinate=Coordinate(float(lat), float(lng)),
    )


@pytest.fixture
def service():
    import service as svc
    svc.uninstall()
    yield svc
    coordinator = svc.uninstall()
    if coordinator is not None:
        coordinator.close()


@pytest.fixture
def client(service):
    return TestClient(service.app)


@pytest.fixture
def ready(service, tmp_path):
    photos = tmp_path / "photos"
    photos.mkdir()
    (photos / "a.jpg").write_text("1.0,1.0,a")
    (photos / "b.jpg").write_text("1.01,1.01,b")
    (photos / "c.jpg").write_text("80.0,80.0,c")
    coordinator = IndexCoordinator(
        Catalog(tmp_path / "catalog.db"),
        extractor=_extractor,
        thumbnails=MagicMock(),
        workers=2,
    )
    service.install(coordinator)
    return coordinator, photos


def _add_and_scan(client, photos) -> int:
    resp = client.post("/roots", json={"path": str(photos), "scan": False})
    assert resp.status_code == 200
    root_id = resp.json()["id"]
    resp = client.post("/roots/scan", json={"root_id": root_id})
    assert resp.status_code == 200
    assert resp.json()["state"] == "idle"
    return root_id


# -- readiness --

def test_health_reports_not_ready(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "ready": False}


def test_handlers_return_503_until_ready(client):
    assert client.get("/roots").status_code == 503
    assert client.post("/clusters", json={"bbox": [0, 0, 1, 1], "zoom": 3}).status_code == 503


def test_health_ready_after_install(client, ready):
    assert client.get("/health").json()["ready"] is True


# -- roots --

def test_add_scan_and_list_roots(client, ready):
    _, photos = ready
    root_id = _add_and_scan(client, photos)
    roots = client.get("/roots").json()
    assert [r["id"] for r in roots] == [root_id]
    assert roots[0]["last_scan_at"] is not None

    progress = client.get("/progress", params={"root_id": root_id}).json()
    assert progress["processed"] == 3
    assert progress["errors"] == 0
    assert len(client.get("/progress").json()) == 1


def test_add_missing_root_is_conflict(client, ready, tmp_path):
    resp = client.post("/roots", json={"path": str(tmp_path / "missing")})
    assert resp.status_code == 409


def test_scan_unknown_root_is_404(client, ready):
    assert client.post("/roots/scan", json={"root_id": 999}).status_code == 404


def test_missing_field_is_400(client, ready):
    assert client.post("/roots", json={}).status_code == 400
    assert client.post("/roots/scan", json={"root_id": "x"}).status_code == 400


def test_remove_root(client, ready):
    coordinator, photos = ready
    root_id = _add_and_scan(client, photos)
    resp = client.post("/roots/remove", json={"root_id": root_id})
    assert resp.status_code == 200
    assert resp.json()["state"] == "stopped"
    assert len(coordinator.spatial_index) == 0


# -- clusters --

def test_clusters_in_viewport(client, ready):
    _, photos = ready
    _add_and_scan(client, photos)
    resp = client.post("/clusters", json={"bbox": [-10, -10, 10, 10], "zoom": 5})
    assert resp.status_code == 200
    body = resp.json()
    assert body["zoom"] == 5
    assert body["total"] == 2
    [cluster] = body["clusters"]
    assert cluster["count"] == 2
    assert abs(cluster["lat"] - 1.005) < 1e-9
    assert abs(cluster["lng"] - 1.005) < 1e-9

    members = client.get(f"/clusters/{cluster['cluster_id']}/members").json()
    assert members["count"] == 2
    assert len(members["member_ids"]) == 2


def test_clusters_with_labels(client, ready):
    _, photos = ready
    _add_and_scan(client, photos)
    body = client.post("/clusters", json={"bbox": [-180, -90, 180, 90], "zoom": 2, "labels": True}).json()
    assert all("label" in c for c in body["clusters"])


def test_clusters_bad_bbox_is_400(client, ready):
    resp = client.post("/clusters", json={"bbox": [0, 10, 5, -10], "zoom": 3})
    assert resp.status_code == 400
    assert "error" in resp.json()


def test_clusters_timeout_is_504(client, ready, service, monkeypatch):
    def slow(*args, **kwargs):
        raise QueryTimeout(0.5)

    monkeypatch.setattr(service._clusters, "get_clusters", slow)
    resp = client.post("/clusters", json={"bbox": [0, 0, 1, 1], "zoom": 3, "timeout": 0.5})
    assert resp.status_code == 504


def test_members_unknown_cluster_is_404(client, ready):
    assert client.get("/clusters/bogus/id/here/members").status_code == 404
    assert client.get("/clusters/5/99999/0/members").status_code == 404


# -- photos and events --

def test_get_photo(client, ready):
    coordinator, photos = ready
    _add_and_scan(client, photos)
    record = coordinator.catalog.find_by_path(str(photos / "a.jpg"))
    body = client.get(f"/photos/{record.id}").json()
    assert body["path"] == record.path
    assert body["lat"] == 1.0
    assert "thumbnail_url" not in body
    assert client.get("/photos/424242").status_code == 404


def test_events_feed_incremental_update(client, ready):
    coordinator, photos = ready
    _add_and_scan(client, photos)
    new = photos / "d.jpg"
    new.write_text("-20.0,30.0,d")

    resp = client.post("/events", json={"events": [{"path": str(new), "kind": "create"}]})
    assert resp.status_code == 200
    assert resp.json()["accepted"] == 1

    coordinator.process_pending(now=time.monotonic() + 1.0)
    assert coordinator.catalog.find_by_path(str(new)) is not None
    assert len(coordinator.spatial_index) == 4


def test_malformed_event_is_400(client, ready):
    resp = client.post("/events", json={"events": [{"path": "/x.jpg", "kind": "teleport"}]})
    assert resp.status_code == 400
    resp = client.post("/events", json={"events": [{"kind": "create"}]})
    assert resp.status_code == 400


def test_clusters_honour_filters(client, ready):
    _, photos = ready
    root_id = _add_and_scan(client, photos)
    bbox = [-10, -10, 10, 10]

    body = client.post("/clusters", json={"bbox": bbox, "zoom": 5, "filters": {"media_types": ["video"]}}).json()
    assert body["total"] == 0

    body = client.post("/clusters", json={"bbox": bbox, "zoom": 5, "filters": {"root_ids": [root_id]}}).json()
    assert body["total"] == 2
    cluster_id = body["clusters"][0]["cluster_id"]

    members = client.get(f"/clusters/{cluster_id}/members", params={"root_ids": str(root_id)}).json()
    assert members["count"] == 2
    members = client.get(f"/clusters/{cluster_id}/members", params={"media_types": "video"}).json()
    assert members["count"] == 0


def test_clusters_bad_filters_is_400(client, ready):
    resp = client.post("/clusters", json={"bbox": [0, 0, 1, 1], "zoom": 3, "filters": {"media_types": ["gif"]}})
    assert resp.status_code == 400
    resp = client.get("/clusters/5/0/0/members", params={"date_from": "soon"})
    assert resp.status_code == 400
