"""Shared test fixtures and helpers."""

from __future__ import annotations

import datetime as dt
import json

import pytest
import requests

import activity_lastfm_scrobbler as scrobbler

NOW = dt.datetime(2024, 5, 15, 12, 0, 0, tzinfo=dt.timezone.utc)


def make_response(payload, status: int = 200) -> requests.Response:
    """A real requests.Response carrying a JSON (or raw bytes) body."""
    resp = requests.Response()
    resp.status_code = status
    resp._content = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    resp.encoding = "utf-8"
    return resp


def listen(track: str, artist: str, when: dt.datetime) -> dict:
    return {
        "header": "YouTube Music",
        "title": f"Listened to {track}",
        "description": artist,
        "time": when.isoformat().replace("+00:00", "Z"),
    }


def scrobble_result(s, code: str = "0", text: str = "") -> dict:
    return {
        "track": {"corrected": "0", "#text": s.track},
        "artist": {"corrected": "0", "#text": s.artist},
        "album": {"corrected": "0"},
        "albumArtist": {"corrected": "0", "#text": ""},
        "timestamp": str(s.timestamp),
        "ignoredMessage": {"code": code, "#text": text},
    }


def accepted_body(batch) -> dict:
    results = [scrobble_result(s) for s in batch]
    return {
        "scrobbles": {
            "@attr": {"accepted": str(len(batch)), "ignored": "0"},
            "scrobble": results[0] if len(results) == 1 else results,
        }
    }


class FakeSession:
    """Stands in for LastFmSession; optionally fails on the n-th call."""

    api_key = "key"
    api_secret = "secret"
    session_key = "sk"
    username = "alice"

    def __init__(self, fail_on: int | None = None):
        self.fail_on = fail_on
        self.calls = []

    def scrobble_many(self, batch):
        self.calls.append(list(batch))
        if len(self.calls) == self.fail_on:
            raise scrobbler.SubmissionError("Network error (ConnectionError): connection reset")
        return accepted_body(batch)


@pytest.fixture(autouse=True)
def isolated_files(tmp_path, monkeypatch):
    """Keep the config cache, debug log and .env lookups out of the real home/cwd."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(scrobbler, "CONFIG_FILE", tmp_path / "config.json")
    monkeypatch.setattr(scrobbler, "DEBUG_LOG", tmp_path / "scrobble_debug.log")
    for var in ("LASTFM_API_KEY", "LASTFM_API_SECRET", "API_KEY", "API_SECRET"):
        # set-then-delete so monkeypatch also removes values a .env load adds later
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
