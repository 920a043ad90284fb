from __future__ import annotations

import pytest
import requests

from autoapply.channels import CvDocument, DryRunChannel, EmailChannel, WebhookChannel, get_channel
from autoapply.config import Settings
from autoapply.errors import SubmissionRejected, SubmissionTransientError

from conftest import job

CV = CvDocument(applicant_name="Jane Doe", applicant_email="jane@example.com", cv_text="cv", cover_letter="Hi")


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.posted = []

    def post(self, url, json=None, timeout=None):
        self.posted.append((url, json, timeout))
        if self.exc:
            raise self.exc
        return self.response


def test_dry_run_accepts():
    res = DryRunChannel().submit(1, job("A"), CV)
    assert res.accepted
    assert res.external_ref.startswith("dryrun-")


def test_webhook_accepts_and_sends_payload():
    session = FakeSession(FakeResponse(200, {"accepted": True, "externalRef": "ats-7"}))
    res = WebhookChannel("https://hooks.example.com/apply", timeout=3, session=session).submit(5, job("A"), CV)
    assert res.accepted and res.external_ref == "ats-7"
    url, body, timeout = session.posted[0]
    assert body["userId"] == 5
    assert body["job"]["title"] == "A"
    assert body["coverLetter"] == "Hi"
    assert timeout == 3


def test_webhook_client_error_is_a_refusal():
    session = FakeSession(FakeResponse(422, text="missing field"))
    res = WebhookChannel("https://hooks.example.com", session=session).submit(1, job("A"), CV)
    assert not res.accepted
    assert "422" in res.reason


@pytest.mark.parametrize("status", [429, 500, 503])
def test_webhook_server_errors_are_transient(status):
    session = FakeSession(FakeResponse(status))
    with pytest.raises(SubmissionTransientError):
        WebhookChannel("https://hooks.example.com", session=session).submit(1, job("A"), CV)


def test_webhook_connection_error_is_transient():
    session = FakeSession(exc=requests.ConnectionError("refused"))
    with pytest.raises(SubmissionTransientError):
        WebhookChannel("https://hooks.example.com", session=session).submit(1, job("A"), CV)


def test_email_channel_needs_mailto_posting():
    channel = EmailChannel("smtp.example.com", 587, "bot", "secret", "bot@example.com")
    with pytest.raises(SubmissionRejected):
        channel.submit(1, job("A", url="https://jobs.example.com/1"), CV)


def test_email_channel_needs_smtp_config():
    channel = EmailChannel("", 587, "", "", "")
    with pytest.raises(SubmissionRejected):
        channel.submit(1, job("A", url="mailto:hr@example.com"), CV)


def test_get_channel():
    assert isinstance(get_channel(Settings(channel="dryrun")), DryRunChannel)
    assert isinstance(get_channel(Settings(channel="bogus")), DryRunChannel)
    hook = get_channel(Settings(channel="webhook", webhook_url="https://hooks.example.com"))
    assert isinstance(hook, WebhookChannel)
    with pytest.raises(ValueError):
        get_channel(Settings(channel="webhook", webhook_url=""))
