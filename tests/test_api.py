import base64
import threading

from fastapi.testclient import TestClient
import numpy as np
import pytest

from conftest import ConstantMatte, OverlapCountingMatte, decode_rgba, encode, make_loader
from rmbg_service.api import create_app, to_data_url
from rmbg_service.history import HistoryStore
from rmbg_service.model_loader import SegmentationEngine


def data_url_bytes(value):
    assert value.startswith("data:image/png;base64,")
    return base64.b64decode(value.split(",", 1)[1])


@pytest.fixture
def history(settings):
    store = HistoryStore(settings.history_db_path)
    yield store
    store.close()


@pytest.fixture
def client(settings, opaque_engine, history):
    app = create_app(settings, engine=opaque_engine, history=history, autoload_model=False)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def cold_client(settings, history):
    engine = SegmentationEngine(settings=settings, loader=make_loader(ConstantMatte(1.0)))
    app = create_app(settings, engine=engine, history=history, autoload_model=False)
    with TestClient(app) as client:
        yield client


def test_health_and_model_info(client):
    assert client.get("/health").json() == {"status": "ok", "model": "ready"}
    assert client.get("/model/info").json() == {"modelId": "briaai/RMBG-1.4", "state": "ready"}


def test_model_init(cold_client):
    assert cold_client.get("/health").json()["model"] == "uninitialized"
    resp = cold_client.post("/model/init")
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert cold_client.post("/model/init").json()["message"] == "Model already initialized"


def test_model_init_failure(settings, history):
    app = create_app(settings, history=history, autoload_model=False)
    with TestClient(app) as client:
        resp = client.post("/model/init")
    assert resp.status_code == 500
    assert "not found" in resp.json()["detail"]


def test_autoload_starts_background_init(settings, history):
    engine = SegmentationEngine(settings=settings, loader=make_loader(ConstantMatte(1.0)))
    app = create_app(settings, engine=engine, history=history, autoload_model=True)
    with TestClient(app):
        engine.initialize()
    assert engine.is_ready


def test_remove_bg_records_history(client, image_file, tmp_path):
    source = image_file("cat.jpg", width=24, height=16, fmt="JPEG")
    target = tmp_path / "out" / "cat.png"

    resp = client.post("/remove-bg", json={"path": str(source), "outputPath": str(target)})

    assert resp.status_code == 200
    body = resp.json()
    png = data_url_bytes(body["data"])
    assert decode_rgba(png).shape == (16, 24, 4)
    assert target.read_bytes() == png

    record = client.get(f"/history/{body['historyId']}").json()
    assert record["originalName"] == "cat.jpg"
    assert record["originalPath"] == str(source)
    assert record["originalData"].startswith("data:image/jpeg;base64,")
    assert data_url_bytes(record["processedData"]) == png


def test_remove_bg_errors(client, cold_client, tmp_path):
    bad = tmp_path / "bad.png"
    bad.write_bytes(b"nope")
    assert client.post("/remove-bg", json={"path": str(bad)}).status_code == 400
    assert client.post("/remove-bg", json={"path": str(tmp_path / "missing.png")}).status_code == 400

    resp = cold_client.post("/remove-bg", json={"path": str(bad)})
    assert resp.status_code == 503


def test_remove_bg_batch(client, image_file, tmp_path):
    paths = [str(image_file("a.png")), str(tmp_path / "missing.png"), str(image_file("b.webp", fmt="WEBP"))]
    out_dir = tmp_path / "batch"

    resp = client.post("/remove-bg/batch", json={"paths": paths, "outputDir": str(out_dir)})

    body = resp.json()
    assert resp.status_code == 200
    assert (body["processed"], body["total"]) == (2, 3)
    assert len(body["results"]) == 2
    assert sorted(p.name for p in out_dir.iterdir()) == ["a-no-bg.png", "b-no-bg.png"]


def test_remove_bg_batch_requires_model(cold_client):
    assert cold_client.post("/remove-bg/batch", json={"paths": []}).status_code == 503


def test_composite_color(client, tmp_path):
    cutout = np.zeros((6, 8, 4), dtype=np.uint8)
    target = tmp_path / "composite.png"

    resp = client.post(
        "/composite",
        json={
            "imageData": to_data_url(encode(cutout)),
            "background": {"type": "color", "color": "#FFFFFF"},
            "outputPath": str(target),
        },
    )

    assert resp.status_code == 200
    assert np.all(decode_rgba(target.read_bytes())[..., :3] == 255)


def test_composite_bad_background(client, tmp_path):
    resp = client.post(
        "/composite",
        json={
            "imageData": to_data_url(encode(np.zeros((2, 2, 4), dtype=np.uint8))),
            "background": {"type": "color", "color": "white"},
            "outputPath": str(tmp_path / "x.png"),
        },
    )
    assert resp.status_code == 400


def test_queue_flow(client, image_file, tmp_path):
    bad = tmp_path / "bad.png"
    bad.write_bytes(b"garbage")
    paths = [str(image_file("one.png")), str(bad), str(image_file("two.png", seed=3))]

    items = client.post("/queue", json={"paths": paths}).json()
    assert [item["status"] for item in items] == ["waiting"] * 3

    assert client.post("/queue/process").status_code == 202

    queue = client.get("/queue").json()
    assert [item["status"] for item in queue["items"]] == ["completed", "error", "completed"]
    assert queue["running"] is False
    assert queue["progress"] == pytest.approx(200 / 3)
    assert queue["items"][0]["result"].startswith("data:image/png;base64,")
    assert queue["items"][1]["error"]

    # completed queue items land in history
    assert client.get("/history/count").json() == {"count": 2}

    failed_id = queue["items"][1]["id"]
    assert client.post(f"/queue/{queue['items'][0]['id']}/retry").status_code == 409
    assert client.post(f"/queue/{failed_id}/retry").json()["status"] == "waiting"
    assert client.post("/queue/unknown/retry").status_code == 404

    assert client.delete("/queue/completed").json() == {"removed": 2}
    assert client.delete(f"/queue/{failed_id}").json() == {"removed": True}
    assert client.delete(f"/queue/{failed_id}").status_code == 404
    assert client.get("/queue").json()["items"] == []


def test_queue_process_requires_model(cold_client):
    assert cold_client.post("/queue/process").status_code == 503


def test_queue_stop(client):
    assert client.post("/queue/stop").json() == {"stopping": True}


def test_history_endpoints(client, history):
    png = encode(np.zeros((2, 2, 4), dtype=np.uint8))
    for i, ts in enumerate((100, 200, 300)):
        history.add_record(f"/pics/img{i}.png", f"img{i}.png", png, timestamp=ts)

    listed = client.get("/history", params={"limit": 2}).json()
    assert [r["originalName"] for r in listed] == ["img2.png", "img1.png"]
    assert listed[0]["originalData"] is None

    found = client.get("/history/search", params={"q": "img1"}).json()
    assert [r["originalName"] for r in found] == ["img1.png"]
    windowed = client.get("/history/search", params={"q": "pics", "since": 150, "until": 250}).json()
    assert [r["timestamp"] for r in windowed] == [200]

    record_id = listed[0]["id"]
    assert client.delete(f"/history/{record_id}").json() == {"deleted": True}
    assert client.get(f"/history/{record_id}").status_code == 404
    assert client.delete(f"/history/{record_id}").status_code == 404

    assert client.delete("/history").json() == {"count": 2}
    assert client.get("/history/count").json() == {"count": 0}


def test_requests_and_queue_share_the_model_one_call_at_a_time(settings, history, image_file):
    model = OverlapCountingMatte(delay=0.1)
    engine = SegmentationEngine(settings=settings, loader=make_loader(model))
    engine.initialize()
    app = create_app(settings, engine=engine, history=history, autoload_model=False)
    paths = [str(image_file(f"img{i}.png", width=12, height=12, seed=i)) for i in range(3)]
    statuses = []

    with TestClient(app) as client:
        client.post("/queue", json={"paths": paths})

        def remove(path):
            statuses.append(client.post("/remove-bg", json={"path": path}).status_code)

        threads = [threading.Thread(target=client.post, args=("/queue/process",))]
        threads += [threading.Thread(target=remove, args=(path,)) for path in paths]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

    assert statuses == [200, 200, 200]
    assert model.calls == 6
    assert model.max_active == 1
