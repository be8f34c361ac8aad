"""Tests for the Lambda and Cloud Run entry points."""

import json
from datetime import datetime, timezone

import psycopg2
import pytest

from scripts.provisioning.entrypoints import aws_lambda, gcp_cloudrun

SUBJECT = "9a8b7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c6d"


@pytest.fixture
def wired(monkeypatch, db, config):
    for module in (aws_lambda, gcp_cloudrun):
        monkeypatch.setattr(module, "configure_logging", lambda level=None: None)
        monkeypatch.setattr(module, "load_config", lambda: config)
        monkeypatch.setattr(module, "Database", lambda cfg: db)
    return db


def test_lambda_provisions_profile(wired):
    response = aws_lambda.handler(
        {"type": "INSERT", "record": {"id": SUBJECT, "email": "a@example.com"}}, None
    )
    body = json.loads(response["body"])
    assert response["statusCode"] == 200
    assert body["provisioned"] is True
    assert SUBJECT in wired.profiles
    assert wired.closed


def test_lambda_accepts_proxy_body(wired):
    response = aws_lambda.handler({"body": json.dumps({"id": SUBJECT})}, None)
    assert json.loads(response["body"])["provisioned"] is True


def test_lambda_is_fail_open_on_profile_error(wired):
    wired.fail_profile_writes = True
    response = aws_lambda.handler({"id": SUBJECT, "email": "a@example.com"}, None)
    body = json.loads(response["body"])
    assert response["statusCode"] == 200
    assert body["provisioned"] is False
    assert body["error_id"] == wired.errors[0]["id"]


def test_lambda_is_fail_open_when_database_unreachable(monkeypatch, config):
    def unreachable(cfg):
        raise psycopg2.OperationalError("could not connect")

    monkeypatch.setattr(aws_lambda, "configure_logging", lambda level=None: None)
    monkeypatch.setattr(aws_lambda, "load_config", lambda: config)
    monkeypatch.setattr(aws_lambda, "Database", unreachable)

    response = aws_lambda.handler({"id": SUBJECT}, None)

    assert response["statusCode"] == 200
    assert json.loads(response["body"])["reason"] == "unavailable"


def test_lambda_rejects_signal_without_id(wired):
    response = aws_lambda.handler({"email": "a@example.com"}, None)
    assert response["statusCode"] == 200
    assert json.loads(response["body"])["provisioned"] is False
    assert wired.profiles == {}


def test_cloudrun_sweep_job(monkeypatch, wired):
    monkeypatch.setenv("PROVISIONING_JOB", "sweep")
    subject = wired.add_identity(email="a@example.com")
    gcp_cloudrun.main()
    assert subject in wired.profiles


def test_cloudrun_alerts_job_exits_on_critical(monkeypatch, wired):
    monkeypatch.setenv("PROVISIONING_JOB", "alerts")
    wired.now = datetime.now(timezone.utc)
    wired.add_identity(created_at=wired.now)  # inside grace period
    gcp_cloudrun.main()

    wired.insert_error_record(SUBJECT, "boom", None)
    with pytest.raises(SystemExit) as exc:
        gcp_cloudrun.main()
    assert exc.value.code == 2


def test_cloudrun_rejects_unknown_job(monkeypatch, wired):
    monkeypatch.setenv("PROVISIONING_JOB", "bogus")
    with pytest.raises(SystemExit) as exc:
        gcp_cloudrun.main()
    assert exc.value.code == 1


@pytest.mark.parametrize("value", ["0", "-1", "ten"])
def test_cloudrun_rejects_bad_sweep_limit(monkeypatch, wired, value):
    monkeypatch.setenv("PROVISIONING_JOB", "sweep")
    monkeypatch.setenv("SWEEP_LIMIT", value)
    subject = wired.add_identity(email="a@example.com")
    with pytest.raises(SystemExit) as exc:
        gcp_cloudrun.main()
    assert exc.value.code == 1
    assert subject not in wired.profiles
    assert wired.runs == {}


def test_cloudrun_sweep_limit_caps_repairs(monkeypatch, wired):
    monkeypatch.setenv("PROVISIONING_JOB", "sweep")
    monkeypatch.setenv("SWEEP_LIMIT", "1")
    for i in range(3):
        wired.add_identity(email=f"u{i}@example.com")
    gcp_cloudrun.main()
    assert len(wired.profiles) == 1
