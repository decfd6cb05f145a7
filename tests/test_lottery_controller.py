from __future__ import annotations

from dataclasses import replace
from datetime import date

from fastapi import FastAPI
from fastapi.testclient import TestClient

from teelottery.controllers.lottery_controller import router as lottery_router
from teelottery.domain.constraints import WindowConfig
from teelottery.domain.models import FrequencyRule
from teelottery.repository.data_repository import DataRepository
from teelottery.services.lottery_service import LotteryProcessingService
from teelottery.utils.config import get_settings


MONDAY = date(2026, 3, 2)


def _build_test_app(tmp_path) -> tuple[FastAPI, DataRepository]:
    get_settings.cache_clear()
    settings = replace(get_settings(), database_path=tmp_path / "lottery_api.db")
    repository = DataRepository(settings)
    repository.initialize_database()

    app = FastAPI()
    app.include_router(lottery_router)
    app.state.repository = repository
    app.state.lottery_service = LotteryProcessingService(repository=repository, settings=settings)
    return app, repository


def test_lottery_end_to_end_flow(tmp_path):
    app, repository = _build_test_app(tmp_path)
    members = [repository.create_member(f"Golfer {i}", "FULL") for i in range(5)]
    repository.create_slot(MONDAY, 7 * 60 + 30, 4)
    repository.create_slot(MONDAY, 14 * 60, 4)

    with TestClient(app) as client:
        windows = client.get("/lottery/windows")
        assert windows.status_code == 200
        assert [w["label"] for w in windows.json()] == [
            "MORNING",
            "MIDDAY",
            "AFTERNOON",
            "EVENING",
        ]

        group = client.post(
            "/lottery/requests",
            json={
                "organizer_id": members[0],
                "requested_date": MONDAY.isoformat(),
                "preferred_window": "morning",
                "member_ids": members[1:4],
            },
        )
        assert group.status_code == 201
        assert group.json()["is_group"] is True
        assert group.json()["preferred_window"] == "MORNING"

        single = client.post(
            "/lottery/requests",
            json={
                "organizer_id": members[4],
                "requested_date": MONDAY.isoformat(),
                "preferred_window": "MORNING",
                "alternate_window": "AFTERNOON",
            },
        )
        assert single.status_code == 201

        preview = client.get(f"/lottery/{MONDAY.isoformat()}/preview")
        assert preview.status_code == 200
        assert preview.json()["processed_count"] == 2
        assert repository.count_bookings() == 0

        processed = client.post(f"/lottery/{MONDAY.isoformat()}/process")
        assert processed.status_code == 200
        body = processed.json()
        assert body["processed_count"] == 2
        assert body["total_requests"] == 2
        assert body["bookings_created"] == 5
        starts = {d["request_id"]: d["start"] for d in body["decisions"]}
        assert starts[group.json()["request_id"]] == "07:30"
        assert starts[single.json()["request_id"]] == "14:00"

        log = client.get(f"/lottery/{MONDAY.isoformat()}/log")
        assert log.status_code == 200
        entries = log.json()["entries"]
        assert [e["entry_type"] for e in entries] == ["GROUP", "INDIVIDUAL"]
        assert entries[1]["assignment_reason"] == "ALTERNATE_MATCH"
        assert entries[1]["preference_granted"] is True


def test_submission_errors_map_to_http_status(tmp_path):
    app, repository = _build_test_app(tmp_path)
    member = repository.create_member("Golfer", "FULL")
    repository.create_rule(
        FrequencyRule(rule_id=0, name="No repeat", max_count=1, period_days=7)
    )
    slot_id = repository.create_slot(date(2026, 2, 28), 480, 4)
    repository.create_booking(slot_id, member, date(2026, 2, 28), 480)

    with TestClient(app) as client:
        unknown_window = client.post(
            "/lottery/requests",
            json={
                "organizer_id": member,
                "requested_date": MONDAY.isoformat(),
                "preferred_window": "NIGHT",
            },
        )
        assert unknown_window.status_code == 400

        invalid_payload = client.post(
            "/lottery/requests",
            json={
                "organizer_id": 0,
                "requested_date": MONDAY.isoformat(),
                "preferred_window": "MORNING",
            },
        )
        assert invalid_payload.status_code == 422

        restricted = client.post(
            "/lottery/requests",
            json={
                "organizer_id": member,
                "requested_date": MONDAY.isoformat(),
                "preferred_window": "MORNING",
            },
        )
        assert restricted.status_code == 409
        assert "Booking limit reached" in restricted.json()["detail"]


def test_cancel_endpoint(tmp_path):
    app, repository = _build_test_app(tmp_path)
    member = repository.create_member("Golfer", "FULL")
    request_id = repository.create_request(member, [member], MONDAY, "MORNING")

    with TestClient(app) as client:
        cancelled = client.post(f"/lottery/requests/{request_id}/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "CANCELLED"

        again = client.post(f"/lottery/requests/{request_id}/cancel")
        assert again.status_code == 409

        missing = client.post("/lottery/requests/9999/cancel")
        assert missing.status_code == 404


def test_bad_window_configuration_returns_400(tmp_path):
    app, repository = _build_test_app(tmp_path)
    repository.save_window_config(WindowConfig(open_minute=600, close_minute=600))

    with TestClient(app) as client:
        assert client.get("/lottery/windows").status_code == 400
        assert client.post(f"/lottery/{MONDAY.isoformat()}/process").status_code == 400


def test_missing_service_returns_503():
    app = FastAPI()
    app.include_router(lottery_router)

    with TestClient(app) as client:
        response = client.get("/lottery/windows")

    assert response.status_code == 503


def test_lowercase_site_labels_are_accepted(tmp_path):
    app, repository = _build_test_app(tmp_path)
    member = repository.create_member("Golfer", "FULL")
    repository.save_window_config(
        WindowConfig(open_minute=420, close_minute=1140, bucket_count=2, labels=("am", "pm"))
    )

    with TestClient(app) as client:
        response = client.post(
            "/lottery/requests",
            json={
                "organizer_id": member,
                "requested_date": MONDAY.isoformat(),
                "preferred_window": "am",
                "alternate_window": " pm ",
            },
        )

    assert response.status_code == 201
    assert response.json()["preferred_window"] == "am"
    assert response.json()["alternate_window"] == "pm"
