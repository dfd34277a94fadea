import json
import time
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from answerbot.config import settings
from answerbot.dependencies import get_job_queue, get_redis_client, get_slack_service, get_worker_trigger
from answerbot.main import app
from answerbot.services.dedup_service import get_process_cache
from answerbot.services.job_queue import JobQueue
from answerbot.services.rate_limit_service import MSG_RATE_LIMITED
from answerbot.services.slack_signature import compute_signature
from conftest import FakeRedis

SECRET = "test-signing-secret"
WAITING_KEY = f"queue:{settings.queue_name}:waiting"


@pytest.fixture
def redis_client():
    return FakeRedis()


class RecordingTrigger:
    def __init__(self):
        self.sources = []

    async def trigger(self, source, body=None):
        self.sources.append(source)
        return True


class RecordingAlerts:
    def __init__(self):
        self.messages = []

    async def __call__(self, message, context=None):
        self.messages.append(message)
        return True


@pytest.fixture
def trigger():
    return RecordingTrigger()


@pytest.fixture
def client(monkeypatch, redis_client, trigger, mock_slack):
    monkeypatch.setattr(settings, "slack_signing_secret", SECRET)
    monkeypatch.setattr(settings, "slack_bot_user_id", "UBOT")
    get_process_cache().clear()

    app.dependency_overrides[get_redis_client] = lambda: redis_client
    app.dependency_overrides[get_worker_trigger] = lambda: trigger
    app.dependency_overrides[get_slack_service] = lambda: mock_slack
    yield TestClient(app)
    app.dependency_overrides.clear()
    get_process_cache().clear()


def signed_post(client, payload, *, ts=None, secret=SECRET):
    body = json.dumps(payload).encode("utf-8")
    ts = str(int(ts if ts is not None else time.time()))
    headers = {
        "Content-Type": "application/json",
        "X-Slack-Request-Timestamp": ts,
        "X-Slack-Signature": compute_signature(body, ts, secret),
    }
    return client.post("/slack/events", content=body, headers=headers)


def mention(event_id="Ev001", text="<@UBOT> what is X?", user="U456", ts="1700000000.000100", **extra):
    event = {"type": "app_mention", "user": user, "text": text, "ts": ts, "channel": "C123", **extra}
    return {"type": "event_callback", "event_id": event_id, "event": event}


def queued_jobs(redis_client) -> list[dict]:
    return [json.loads(raw)["job"] for raw in redis_client.lists.get(WAITING_KEY, [])]


class TestHandshake:
    def test_url_verification_echoes_challenge(self, client, redis_client):
        response = client.post("/slack/events", json={"type": "url_verification", "challenge": "abc123"})

        assert response.status_code == 200
        assert response.json() == {"challenge": "abc123"}
        assert redis_client.lists == {}
        assert redis_client.data == {}


class TestMentionFlow:
    def test_mention_enqueues_one_job(self, client, redis_client, trigger):
        response = signed_post(client, mention())

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        jobs = queued_jobs(redis_client)
        assert len(jobs) == 1
        assert jobs[0]["questionText"] == "what is X?"
        assert jobs[0]["channelId"] == "C123"
        assert trigger.sources == ["slack_events"]

    def test_replay_is_acknowledged_but_not_enqueued(self, client, redis_client):
        first = signed_post(client, mention())
        second = signed_post(client, mention())

        assert first.json() == {"ok": True}
        assert second.json() == {"ok": True}
        assert len(queued_jobs(redis_client)) == 1

    def test_replay_after_process_restart_still_deduplicated(self, client, redis_client):
        signed_post(client, mention())
        get_process_cache().clear()
        signed_post(client, mention())

        assert len(queued_jobs(redis_client)) == 1

    def test_bot_message_is_ignored(self, client, redis_client):
        response = signed_post(client, mention(bot_id="B999"))

        assert response.json() == {"ok": True}
        assert queued_jobs(redis_client) == []

    def test_sixth_question_in_a_minute_gets_rate_limit_notice(self, client, redis_client, mock_slack):
        for n in range(6):
            signed_post(client, mention(event_id=f"Ev{n}", ts=f"170000000{n}.000100"))

        assert len(queued_jobs(redis_client)) == 5
        assert mock_slack.post_message.await_args.args[1] == MSG_RATE_LIMITED


class TestRejections:
    def test_bad_signature_is_401(self, client, redis_client):
        response = signed_post(client, mention(), secret="wrong-secret")

        assert response.status_code == 401
        assert queued_jobs(redis_client) == []

    def test_stale_timestamp_is_401(self, client, redis_client):
        response = signed_post(client, mention(), ts=time.time() - 301)

        assert response.status_code == 401
        assert queued_jobs(redis_client) == []

    def test_malformed_json_is_400(self, client):
        response = client.post("/slack/events", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_unknown_payload_type_is_400(self, client):
        response = signed_post(client, {"type": "block_actions"})
        assert response.status_code == 400


class TestDegradedStores:
    def test_queue_outage_still_acknowledges(self, client, redis_client):
        broken = FakeRedis()
        broken.fail_with = ConnectionError("down")
        app.dependency_overrides[get_job_queue] = lambda: JobQueue(broken)

        alerts = RecordingAlerts()
        with patch("answerbot.routers.slack_events.alert_critical", new=alerts):
            response = signed_post(client, mention())

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert alerts.messages == ["Slack event dropped: job queue unavailable"]

    def test_dedup_outage_acknowledges_without_job(self, client, redis_client):
        redis_client.fail_with = ConnectionError("down")

        with patch("answerbot.routers.slack_events.alert_critical", new=RecordingAlerts()):
            response = signed_post(client, mention())

        assert response.json() == {"ok": True}
        assert queued_jobs(redis_client) == []


class TestDiagnosticTrigger:
    def test_reports_queue_depth(self, client):
        signed_post(client, mention())

        response = signed_post(client, {"type": "diagnostic"})

        assert response.json() == {"ok": True, "queueDepth": 1}
