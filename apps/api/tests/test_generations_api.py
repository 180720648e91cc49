"""HTTP surface of the generation tracker."""

from __future__ import annotations

from datetime import timedelta
import os
import unittest

from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import create_app
from app.repositories.sql import SqlTrackerStore
from app.schemas.generation import GenerationStatus
from fakes import T0, FakeClock

_SECRET_HEADERS = {"X-Callback-Secret": "test-callback-secret"}


def _auth(user_id: str = "user-1") -> dict[str, str]:
    return {"Authorization": f"Bearer test:{user_id}"}


class _SettingsEnvCase(unittest.TestCase):
    _env_keys = (
        "REELTRACK_AUTH_PROVIDER",
        "REELTRACK_CALLBACK_SECRET",
        "REELTRACK_TRIGGER_PROVIDER",
        "REELTRACK_STORE_BACKEND",
        "REELTRACK_AUTO_MONITOR",
    )

    def setUp(self) -> None:
        self._old_env = {k: os.environ.get(k) for k in self._env_keys}
        os.environ["REELTRACK_AUTH_PROVIDER"] = "mock"
        os.environ["REELTRACK_CALLBACK_SECRET"] = "test-callback-secret"
        os.environ["REELTRACK_TRIGGER_PROVIDER"] = "mock"
        os.environ["REELTRACK_STORE_BACKEND"] = "memory"
        os.environ["REELTRACK_AUTO_MONITOR"] = "true"
        get_settings.cache_clear()
        self.clock = FakeClock()

    def tearDown(self) -> None:
        for key, value in self._old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        get_settings.cache_clear()


class GenerationLaunchApiTests(_SettingsEnvCase):
    def test_launch_returns_202_and_starts_monitoring(self) -> None:
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            response = client.post(
                "/api/v1/generations",
                headers=_auth(),
                json={"script": "A calm product teaser", "metadata": {"voice": "warm"}},
            )
            monitoring = client.get("/api/v1/generations/monitoring", headers=_auth())
            other_user = client.get("/api/v1/generations/monitoring", headers=_auth("user-2"))

        self.assertEqual(response.status_code, 202)
        body = response.json()
        self.assertEqual(body["status"], "processing")
        self.assertTrue(body["acknowledged"])
        self.assertTrue(body["monitoring"])
        self.assertEqual(body["remaining_seconds"], 2340)
        self.assertEqual(app.state.trigger.payloads[0].correlation_id, body["correlation_id"])
        self.assertEqual(app.state.trigger.payloads[0].metadata, {"voice": "warm"})

        self.assertEqual(monitoring.status_code, 200)
        self.assertEqual(monitoring.json()["correlation_id"], body["correlation_id"])
        self.assertEqual(monitoring.json()["state"], "active")
        self.assertEqual(other_user.status_code, 404)
        self.assertEqual(other_user.json()["code"], "RESOURCE_NOT_FOUND")

    def test_second_launch_is_rejected_while_first_is_processing(self) -> None:
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            first = client.post("/api/v1/generations", headers=_auth(), json={"script": "S"})
            second = client.post("/api/v1/generations", headers=_auth(), json={"script": "S2"})

        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "GENERATION_IN_PROGRESS")
        self.assertEqual(second.json()["details"]["correlation_id"], first.json()["correlation_id"])
        self.assertEqual(len(app.state.trigger.payloads), 1)

    def test_trigger_failure_is_reported_as_unacknowledged(self) -> None:
        app = create_app(clock=self.clock)
        app.state.trigger.failure_message = "runner timed out"
        with TestClient(app) as client:
            response = client.post("/api/v1/generations", headers=_auth(), json={"script": "S"})
            current = client.get("/api/v1/generations/current", headers=_auth())

        self.assertEqual(response.status_code, 202)
        self.assertFalse(response.json()["acknowledged"])
        self.assertEqual(current.json()["status"], "processing")

    def test_invalid_scripts_return_validation_error(self) -> None:
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            empty = client.post("/api/v1/generations", headers=_auth(), json={"script": ""})
            blank = client.post("/api/v1/generations", headers=_auth(), json={"script": "   "})
            missing = client.post("/api/v1/generations", headers=_auth(), json={})

        for response in (empty, blank, missing):
            self.assertEqual(response.status_code, 422)
            self.assertEqual(response.json()["code"], "VALIDATION_ERROR")
        self.assertEqual(app.state.store.request_write_count, 0)


class GenerationTrackingApiTests(_SettingsEnvCase):
    def test_current_generation_reports_remaining_time(self) -> None:
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            missing = client.get("/api/v1/generations/current", headers=_auth())
            client.post("/api/v1/generations", headers=_auth(), json={"script": "S"})
            self.clock.set(T0 + timedelta(minutes=10))
            current = client.get("/api/v1/generations/current", headers=_auth())

        self.assertEqual(missing.status_code, 404)
        self.assertEqual(current.status_code, 200)
        self.assertEqual(current.json()["remaining_seconds"], 1740)
        self.assertEqual(current.json()["remaining_display"], "29:00")

    def test_delivered_completion_is_found_by_manual_check(self) -> None:
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            launched = client.post("/api/v1/generations", headers=_auth(), json={"script": "S"}).json()
            miss = client.post("/api/v1/generations/check", headers=_auth())
            delivered = client.post(
                "/api/v1/internal/completions",
                headers=_SECRET_HEADERS,
                json={
                    "user_id": "user-1",
                    "video_url": "https://cdn.example/teaser.mp4",
                    "title": "Teaser",
                    "correlation_id": launched["correlation_id"],
                },
            )
            hit = client.post("/api/v1/generations/check", headers=_auth())
            current = client.get("/api/v1/generations/current", headers=_auth())
            monitoring = client.get("/api/v1/generations/monitoring", headers=_auth())
            library = client.get("/api/v1/completions", headers=_auth())

        self.assertEqual(miss.json(), {"found": False, "artifact": None})
        self.assertEqual(delivered.status_code, 201)
        self.assertTrue(hit.json()["found"])
        self.assertEqual(hit.json()["artifact"]["video_url"], "https://cdn.example/teaser.mp4")
        self.assertEqual(current.status_code, 404)
        self.assertEqual(monitoring.json()["state"], "resolved")
        self.assertEqual([item["title"] for item in library.json()], ["Teaser"])

    def test_script_fallback_over_http(self) -> None:
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            client.post("/api/v1/generations", headers=_auth(), json={"script": "Exact script"})
            client.post(
                "/api/v1/internal/completions",
                headers=_SECRET_HEADERS,
                json={
                    "user_id": "user-1",
                    "video_url": "https://cdn.example/fallback.mp4",
                    "correlation_id": "",
                    "script": "Exact script",
                },
            )
            hit = client.post("/api/v1/generations/check", headers=_auth())

        self.assertTrue(hit.json()["found"])
        self.assertEqual(hit.json()["artifact"]["title"], "Generated video")
        self.assertIsNone(hit.json()["artifact"]["correlation_id"])

    def test_cancel_then_sweep_reconciles_late_artifact(self) -> None:
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            launched = client.post("/api/v1/generations", headers=_auth(), json={"script": "S"}).json()
            cancelled = client.post("/api/v1/generations/current/cancel", headers=_auth())
            cancel_again = client.post("/api/v1/generations/current/cancel", headers=_auth())
            client.post(
                "/api/v1/internal/completions",
                headers=_SECRET_HEADERS,
                json={
                    "user_id": "user-1",
                    "video_url": "https://cdn.example/late.mp4",
                    "correlation_id": launched["correlation_id"],
                },
            )
            swept = client.post("/api/v1/generations/sweep", headers=_auth())

        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["status"], "expired")
        self.assertEqual(cancel_again.status_code, 404)
        self.assertEqual(len(swept.json()["reconciled"]), 1)
        record = app.state.store.requests[("user-1", launched["correlation_id"])]
        self.assertEqual(record.status, GenerationStatus.COMPLETED)

    def test_recover_resumes_with_original_start_time(self) -> None:
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            launched = client.post("/api/v1/generations", headers=_auth(), json={"script": "S"}).json()
            self.clock.set(T0 + timedelta(minutes=10))
            recovered = client.post("/api/v1/generations/recover", headers=_auth())
            monitoring = client.get("/api/v1/generations/monitoring", headers=_auth())
            without_resume = client.post("/api/v1/generations/recover?auto_resume=false", headers=_auth())

        self.assertEqual(recovered.status_code, 200)
        body = recovered.json()
        self.assertEqual(body["outcome"], "resume")
        self.assertEqual(body["correlation_id"], launched["correlation_id"])
        self.assertEqual(body["remaining_seconds"], 1740)
        self.assertTrue(body["monitoring"])
        self.assertEqual(monitoring.json()["remaining_seconds"], 1740)
        self.assertFalse(without_resume.json()["monitoring"])

    def test_recover_with_nothing_processing(self) -> None:
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            response = client.post("/api/v1/generations/recover", headers=_auth())

        self.assertEqual(response.json()["outcome"], "nothing-to-recover")

    def test_cleanup_expires_stale_rows(self) -> None:
        os.environ["REELTRACK_AUTO_MONITOR"] = "false"
        get_settings.cache_clear()
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            launched = client.post("/api/v1/generations", headers=_auth(), json={"script": "S"}).json()
            self.clock.set(T0 + timedelta(hours=1))
            response = client.post("/api/v1/generations/cleanup", headers=_auth())
            again = client.post("/api/v1/generations/cleanup", headers=_auth())

        self.assertFalse(launched["monitoring"])
        self.assertEqual(response.json(), [launched["correlation_id"]])
        self.assertEqual(again.json(), [])
        record = app.state.store.requests[("user-1", launched["correlation_id"])]
        self.assertEqual(record.status, GenerationStatus.EXPIRED)

    def test_completion_list_is_scoped_and_limited(self) -> None:
        app = create_app(clock=self.clock)
        with TestClient(app) as client:
            for index in range(3):
                client.post(
                    "/api/v1/internal/completions",
                    headers=_SECRET_HEADERS,
                    json={"user_id": "user-1", "video_url": f"https://cdn.example/{index}.mp4"},
                )
            client.post(
                "/api/v1/internal/completions",
                headers=_SECRET_HEADERS,
                json={"user_id": "user-2", "video_url": "https://cdn.example/other.mp4"},
            )
            limited = client.get("/api/v1/completions?limit=2", headers=_auth())
            too_large = client.get("/api/v1/completions?limit=101", headers=_auth())

        self.assertEqual(
            [item["video_url"] for item in limited.json()],
            ["https://cdn.example/2.mp4", "https://cdn.example/1.mp4"],
        )
        self.assertEqual(too_large.status_code, 422)


class SqlBackedApiTests(_SettingsEnvCase):
    def test_launch_and_delivery_round_trip_through_sql_store(self) -> None:
        store = SqlTrackerStore.from_url("sqlite:///:memory:")
        app = create_app(store=store, clock=self.clock)
        with TestClient(app) as client:
            launched = client.post("/api/v1/generations", headers=_auth(), json={"script": "S"}).json()
            client.post(
                "/api/v1/internal/completions",
                headers=_SECRET_HEADERS,
                json={
                    "user_id": "user-1",
                    "video_url": "https://cdn.example/sql.mp4",
                    "correlation_id": launched["correlation_id"],
                },
            )
            hit = client.post("/api/v1/generations/check", headers=_auth())
            current = client.get("/api/v1/generations/current", headers=_auth())

        self.assertTrue(hit.json()["found"])
        self.assertEqual(current.status_code, 404)


if __name__ == "__main__":
    unittest.main()
