"""Cron and job-processing endpoints"""
import logging
import uuid
from datetime import datetime, timedelta

import httpx

from app.api import cron as cron_api
from app.api.deps import get_job_processor
from app.core.config import settings
from app.core.exceptions import QueueUnavailableError
from app.main import app
from app.models import AuditEventType, AuditLog, Payment, SyncFrequency, SyncJob, SyncJobProvider, SyncJobType
from app.services import job_queue, scheduler


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/cron/sync-payments").json()["status"] == "ok"
    body = client.get("/cron/sync-payment").json()
    assert body["endpoint"] == "sync-payment"
    assert body["windowMinutes"] == 15


def test_cron_secret_rejects_and_audits(client, db, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "s3cret")

    assert client.post("/cron/sync-payments").status_code == 401
    response = client.post("/jobs/process", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}

    events = db.query(AuditLog).filter(AuditLog.event_type == AuditEventType.UNAUTHORIZED_CRON_ACCESS).all()
    assert sorted(event.resource_id for event in events) == ["/cron/sync-payments", "/jobs/process"]

    response = client.post("/cron/sync-payments", headers={"Authorization": "Bearer s3cret"})
    assert response.status_code == 200


def test_scheduled_tenant_is_enqueued_then_processed(client, db, website, make_config, fake_stripe, payment_intent, triggered):
    config = make_config(website, frequency=SyncFrequency.DAILY)
    fake_stripe.payment_intents = [payment_intent("pi_1"), payment_intent("pi_2")]

    body = client.post("/cron/sync-payments").json()
    assert body["websitesScanned"] == 1
    assert body["jobsCreated"] == 1
    assert body["jobs"][0]["websiteId"] == str(website.id)
    assert len(triggered) == 1

    job = job_queue.get_by_id(db, uuid.UUID(body["jobs"][0]["jobId"]))
    assert job.type == SyncJobType.CRON
    assert job.end_date - job.start_date == timedelta(days=8)

    body = client.post("/jobs/process", json={"batchSize": 5, "maxConcurrent": 2}).json()
    assert body["processed"] == 1
    assert body["jobs"][0]["status"] == "completed"
    assert body["jobs"][0]["result"] == {"synced": 2, "skipped": 0, "errors": 0}
    assert db.query(Payment).count() == 2

    db.refresh(config)
    assert config.next_sync_at == config.last_sync_at + timedelta(days=1)

    # Not due again until tomorrow
    body = client.post("/cron/sync-payments").json()
    assert body["jobsCreated"] == 0
    assert len(triggered) == 1


def test_cron_skips_tenant_with_active_job(client, db, website, make_config, triggered):
    make_config(website, frequency=SyncFrequency.HOURLY)
    job_queue.enqueue(db, website.id, SyncJobProvider.STRIPE, SyncJobType.PERIODIC)

    body = client.post("/cron/sync-payments").json()
    assert body["websitesScanned"] == 1
    assert body["jobsCreated"] == 0
    assert triggered == []


def test_cron_ignores_realtime_disabled_and_not_due(client, db, make_website, make_config):
    make_config(make_website("Realtime"), frequency=SyncFrequency.REALTIME)
    make_config(make_website("Disabled"), frequency=SyncFrequency.DAILY, enabled=False)
    make_config(make_website("Later"), frequency=SyncFrequency.DAILY,
                next_sync_at=datetime.utcnow() + timedelta(hours=3))
    make_config(make_website("No key"), frequency=SyncFrequency.DAILY, api_key=None)

    body = client.post("/cron/sync-payments").json()
    assert body["websitesScanned"] == 0
    assert db.query(SyncJob).count() == 0


def test_realtime_sweep_reports_each_tenant(client, db, make_website, make_config, fake_stripe, payment_intent):
    good_site, broken_site, daily_site = make_website("Good"), make_website("Broken"), make_website("Daily")
    good = make_config(good_site)
    broken = make_config(broken_site)
    broken.api_key = "not-a-fernet-token"
    db.commit()
    make_config(daily_site, frequency=SyncFrequency.DAILY)
    fake_stripe.payment_intents = [payment_intent("pi_1")]

    body = client.post("/cron/sync-payment").json()

    assert body["websitesProcessed"] == 2
    assert body["totalSynced"] == 1
    results = {entry["websiteId"]: entry for entry in body["results"]}
    assert results[str(good_site.id)]["synced"] == 1
    assert results[str(good_site.id)]["error"] is None
    assert "could not be decrypted" in results[str(broken_site.id)]["error"]

    _, start, end = fake_stripe.list_calls[0]
    assert end - start == timedelta(minutes=15)
    db.refresh(good)
    assert good.last_sync_at == end
    db.refresh(broken)
    assert broken.last_sync_at is None


def test_realtime_sweep_with_no_tenants(client):
    body = client.post("/cron/sync-payment").json()
    assert body["websitesProcessed"] == 0
    assert body["results"] == []


def test_process_jobs_forwards_to_job_endpoint(client, monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, json))
        return httpx.Response(200, json={"success": True, "processed": 0, "jobs": []})

    monkeypatch.setattr(cron_api.httpx, "post", fake_post)
    response = client.post("/cron/process-jobs", json={"batchSize": 4})

    assert response.status_code == 200
    assert response.json()["processed"] == 0
    assert calls == [("http://localhost:8000/jobs/process", {"batchSize": 4, "maxConcurrent": 3})]


def test_process_jobs_upstream_failure_is_502(client, monkeypatch):
    def unreachable(url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(cron_api.httpx, "post", unreachable)
    assert client.post("/cron/process-jobs").status_code == 502

    monkeypatch.setattr(cron_api.httpx, "post", lambda url, **kwargs: httpx.Response(500, text="boom"))
    assert client.post("/cron/process-jobs").status_code == 502


def test_queue_failure_is_503(client):
    class BrokenProcessor:
        def process_batch(self, batch_size=None, max_concurrency=None):
            raise QueueUnavailableError("connection lost")

    app.dependency_overrides[get_job_processor] = lambda: BrokenProcessor()
    response = client.post("/jobs/process")
    assert response.status_code == 503
    assert response.json() == {"detail": "Job queue unavailable"}


def test_process_request_is_validated(client):
    assert client.post("/jobs/process", json={"batchSize": 0}).status_code == 422


def test_get_job(client, db, website):
    job = job_queue.enqueue(db, website.id, SyncJobProvider.STRIPE, SyncJobType.MANUAL)

    body = client.get(f"/jobs/{job.id}").json()
    assert body["id"] == str(job.id)
    assert body["status"] == "pending"
    assert body["type"] == "manual"
    assert body["priority"] == 80
    assert body["retryCount"] == 0

    assert client.get(f"/jobs/{uuid.uuid4()}").status_code == 404


def test_cleanup_jobs(client, db, website):
    job = job_queue.enqueue(db, website.id, SyncJobProvider.STRIPE, SyncJobType.MANUAL)
    job_queue.dequeue(db)
    job_queue.mark_completed(db, job.id, {"synced": 0, "skipped": 0, "errors": 0})
    job = job_queue.get_by_id(db, job.id)
    job.completed_at = datetime.utcnow() - timedelta(days=90)
    db.commit()

    assert client.post("/cron/cleanup-jobs").json() == {"success": True, "deleted": 1}


def test_trigger_does_not_wait_for_the_pass(monkeypatch, caplog):
    timeouts = []

    def slow_pass(url, json=None, headers=None, timeout=None):
        timeouts.append(timeout)
        raise httpx.ReadTimeout("timed out")

    monkeypatch.setattr(scheduler.httpx, "post", slow_pass)
    with caplog.at_level(logging.INFO, logger="app.services.scheduler"):
        scheduler.trigger_job_processing()

    assert timeouts == [settings.JOB_TRIGGER_TIMEOUT_SECONDS]
    assert "Job processing triggered" in caplog.text
    assert [record for record in caplog.records if record.levelno >= logging.ERROR] == []


def test_unreachable_trigger_is_logged_as_error(monkeypatch, caplog):
    def unreachable(url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(scheduler.httpx, "post", unreachable)
    with caplog.at_level(logging.INFO, logger="app.services.scheduler"):
        scheduler.trigger_job_processing()

    assert any(record.levelno == logging.ERROR for record in caplog.records)
