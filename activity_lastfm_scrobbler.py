#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Activity → Last.fm Scrobbler (CLI), v1.0

Reads a personal activity export (JSON list of {title, description, time}
entries, e.g. a Google Takeout "My Activity" file) and scrobbles the
"Listened to ..." events to Last.fm.

- Only listen events from the last two weeks are sent (Last.fm rejects older ones).
- Optional --from / --to window inside those two weeks.
- Batches of 50 per track.scrobble call, submitted strictly one after another.
- Reports accepted/ignored counts and the reason for every ignored scrobble.
- Mobile-session login (username + password), cached session key, --auth-reset.
- --dry-run to preview batches without logging in; --debug writes a redacted
  request/response log to scrobble_debug.log.
"""

from __future__ import annotations

import argparse
import datetime as dt
import getpass
import hashlib
import json
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import requests
from dotenv import find_dotenv, load_dotenv

LASTFM_API_ROOT = "https://ws.audioscrobbler.com/2.0/"
CONFIG_FILE = Path.home() / ".activity_lastfm_scrobbler_config.json"
USER_AGENT = "Activity-Lastfm-Scrobbler/1.0"

SESSION = requests.Session()
SESSION.headers.update({"User-Agent": USER_AGENT})

SIGNING_SKIP = {"format", "callback"}
REDACT_KEYS = {"api_sig", "sk", "password"}
DEBUG_LOG = Path("scrobble_debug.log")

LISTEN_EVENT_PREFIX = "Listened to "
MAX_SCROBBLE_AGE = dt.timedelta(weeks=2)  # Last.fm won't accept older scrobbles
BATCH_SIZE = 50  # track.scrobble limit per call
FRACTION_RE = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")

# ---------------------------
# Errors
# ---------------------------

class ScrobblerError(Exception):
    """Base class for failures that abort the run."""

class InputError(ScrobblerError): ...
class ValidationError(ScrobblerError): ...
class AuthenticationError(ScrobblerError): ...
class SubmissionError(ScrobblerError): ...

# ---------------------------
# Utilities
# ---------------------------

def md5_hex(s: str) -> str:
    return hashlib.md5(s.encode("utf-8")).hexdigest()


def load_config() -> Dict[str, str]:
    if CONFIG_FILE.exists():
        try:
            return json.loads(CONFIG_FILE.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
    return {}


def save_config(cfg: Dict[str, str]) -> None:
    CONFIG_FILE.write_text(json.dumps(cfg, ensure_ascii=False, indent=2), encoding="utf-8")


def delete_config() -> None:
    try:
        if CONFIG_FILE.exists():
            CONFIG_FILE.unlink()
    except OSError:
        pass


def log_debug(line: str) -> None:
    try:
        DEBUG_LOG.parent.mkdir(parents=True, exist_ok=True)
        with DEBUG_LOG.open("a", encoding="utf-8") as lf:
            lf.write(line + "\n")
    except OSError:
        pass


def parse_activity_time(ts: str) -> dt.datetime:
    """
    Parse an ISO 8601 timestamp ('2023-01-01T12:00:00.123Z', '...+02:00') to an
    aware datetime. Naive values are taken as local time.
    """
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    # fromisoformat wants exactly 3 or 6 fractional digits before 3.11.
    ts = FRACTION_RE.sub(lambda m: m.group(1) + "." + (m.group(2) + "000000")[:6], ts, count=1)
    d = dt.datetime.fromisoformat(ts)
    if d.tzinfo is None:
        d = d.astimezone()
    return d


def format_unix(ts: int) -> str:
    """Readable local-time rendering of a Unix timestamp, with UTC offset."""
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc).astimezone().isoformat(timespec="seconds")

# ---------------------------
# Activity parsing
# ---------------------------

@dataclass(frozen=True)
class Scrobble:
    artist: str
    track: str
    timestamp: int


@dataclass(frozen=True)
class TimeWindow:
    """Open interval (start, end); None means the default edge."""
    start: Optional[dt.datetime] = None
    end: Optional[dt.datetime] = None


def load_activity(path: Optional[str]) -> List[Dict[str, Any]]:
    if not path:
        raise InputError("Provide a path to an activity JSON file")
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise InputError(f"Couldn't parse activity JSON file '{path}'") from exc
    if not isinstance(data, list) or not all(isinstance(e, dict) for e in data):
        raise InputError(f"Couldn't parse activity JSON file '{path}'")
    return data


def is_listen_event(entry: Dict[str, Any]) -> bool:
    title = entry.get("title")
    return isinstance(title, str) and title.startswith(LISTEN_EVENT_PREFIX)


def entry_time(entry: Dict[str, Any], index: Optional[int] = None) -> dt.datetime:
    raw = entry.get("time")
    try:
        return parse_activity_time(raw)
    except (AttributeError, TypeError, ValueError) as exc:
        where = f"entry {index}" if index is not None else "entry"
        raise ValidationError(f"Activity {where} has an unreadable time: {raw!r}") from exc


def _aware(d: Optional[dt.datetime]) -> Optional[dt.datetime]:
    # Naive datetimes are local time, as in parse_activity_time.
    if d is not None and d.tzinfo is None:
        return d.astimezone()
    return d


def filter_activity(
    entries: Sequence[Dict[str, Any]],
    window: TimeWindow,
    now: Optional[dt.datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Keep listen events played after now - 2 weeks and inside the window.

    Order is preserved. Only listen events have their time parsed; one that
    can't be parsed raises ValidationError for the whole file.
    """
    now = _aware(now) or dt.datetime.now(dt.timezone.utc)
    oldest = now - MAX_SCROBBLE_AGE
    start = _aware(window.start) or oldest
    end = _aware(window.end) or now

    selected: List[Dict[str, Any]] = []
    for index, entry in enumerate(entries):
        if not is_listen_event(entry):
            continue
        played_at = entry_time(entry, index)
        if played_at > oldest and played_at > start and played_at < end:
            selected.append(entry)
    return selected


def activity_to_scrobble(entry: Dict[str, Any]) -> Scrobble:
    description = entry.get("description")
    return Scrobble(
        artist="" if description is None else str(description),
        track=entry["title"][len(LISTEN_EVENT_PREFIX):],
        timestamp=int(entry_time(entry).timestamp()),
    )


def chunk(scrobbles: Sequence[Scrobble], size: int = BATCH_SIZE) -> List[List[Scrobble]]:
    if size < 1:
        raise ValueError("batch size must be at least 1")
    return [list(scrobbles[i : i + size]) for i in range(0, len(scrobbles), size)]

# ---------------------------
# Last.fm API
# ---------------------------

def build_api_sig(params: Dict[str, str], api_secret: str) -> str:
    """
    Sort parameters (excluding 'format'/'callback') by ASCII key, concatenate key+value,
    append secret, MD5.
    """
    items = [(k, v) for k, v in params.items() if k not in SIGNING_SKIP]
    items.sort(key=lambda kv: kv[0])
    sig_str = "".join(k + v for k, v in items) + api_secret
    return md5_hex(sig_str)


def lastfm_post(params: Dict[str, str], api_secret: str, timeout: int = 30) -> requests.Response:
    params = dict(params)
    params["api_sig"] = build_api_sig(params, api_secret)
    return SESSION.post(LASTFM_API_ROOT, data=params, timeout=timeout)


def _redacted(params: Dict[str, str]) -> Dict[str, str]:
    return {k: v for k, v in params.items() if k.lower() not in REDACT_KEYS}


def lastfm_call(
    params: Dict[str, str],
    api_secret: str,
    error_cls: type,
    *,
    debug: bool = False,
    log_response: bool = True,
) -> Dict[str, Any]:
    """
    Signed POST; any transport, HTTP or API-level failure raises error_cls.

    Pass log_response=False for calls whose body holds secrets (auth sessions).
    """
    if debug:
        log_debug("REQUEST PARAMS (redacted): " + json.dumps(_redacted(params), ensure_ascii=False)[:6000])
    try:
        resp = lastfm_post(params, api_secret)
    except requests.RequestException as exc:
        raise error_cls(f"Network error ({exc.__class__.__name__}): {exc}") from exc
    if debug:
        if log_response:
            log_debug("RESPONSE TEXT: " + resp.text[:12000])
        else:
            log_debug(f"RESPONSE: HTTP {resp.status_code}, body withheld")

    try:
        data = resp.json()
    except ValueError:
        data = None

    # Last.fm reports API errors as {"error": <code>, "message": ...}, often with a 4xx status.
    if isinstance(data, dict) and "error" in data:
        raise error_cls(f"Last.fm API error {data.get('error')}: {data.get('message', '')}")
    if not resp.ok:
        raise error_cls(f"Last.fm returned HTTP {resp.status_code}")
    if not isinstance(data, dict):
        raise error_cls("Last.fm returned an unreadable response")
    return data


@dataclass(frozen=True)
class Credentials:
    api_key: str
    api_secret: str
    username: str
    password: Optional[str] = field(default=None, repr=False)
    session_key: Optional[str] = field(default=None, repr=False)


def build_scrobble_params(batch: Sequence[Scrobble], api_key: str, session_key: str) -> Dict[str, str]:
    """Build parameter dict for track.scrobble (<=50 items)."""
    params: Dict[str, str] = {
        "method": "track.scrobble",
        "api_key": api_key,
        "sk": session_key,
        "format": "json",
    }
    for i, s in enumerate(batch):
        params[f"artist[{i}]"] = s.artist
        params[f"track[{i}]"] = s.track
        params[f"timestamp[{i}]"] = str(s.timestamp)
    return params


class LastFmSession:
    """An authenticated Last.fm session able to submit scrobble batches."""

    def __init__(self, api_key: str, api_secret: str, session_key: str, username: str, debug: bool = False):
        self.api_key = api_key
        self.api_secret = api_secret
        self.session_key = session_key
        self.username = username
        self.debug = debug

    def scrobble_many(self, batch: Sequence[Scrobble]) -> Dict[str, Any]:
        """Submit one batch (<=50) and return the raw JSON response. No retries."""
        if len(batch) > BATCH_SIZE:
            raise ValueError(f"at most {BATCH_SIZE} scrobbles per call")
        params = build_scrobble_params(batch, self.api_key, self.session_key)
        return lastfm_call(params, self.api_secret, SubmissionError, debug=self.debug)


def get_lastfm_session(credentials: Credentials, debug: bool = False) -> LastFmSession:
    if not credentials.api_key or not credentials.api_secret:
        raise AuthenticationError("A Last.fm API key and secret are required")

    if credentials.session_key:
        print(f"Using Last.fm session for {credentials.username}")
        return LastFmSession(
            credentials.api_key, credentials.api_secret, credentials.session_key, credentials.username, debug
        )

    print(f"Logging into Last.fm as {credentials.username}")
    if not credentials.password:
        raise AuthenticationError("A Last.fm password is required")
    payload = {
        "method": "auth.getMobileSession",
        "username": credentials.username,
        "password": credentials.password,
        "api_key": credentials.api_key,
        "format": "json",
    }
    data = lastfm_call(payload, credentials.api_secret, AuthenticationError, debug=debug, log_response=False)
    sess = data.get("session") or {}
    session_key = sess.get("key")
    if not session_key:
        raise AuthenticationError(f"Incomplete session response: {data}")
    return LastFmSession(
        credentials.api_key, credentials.api_secret, session_key, sess.get("name") or credentials.username, debug
    )

# ---------------------------
# Scrobble responses
# ---------------------------

@dataclass(frozen=True)
class IgnoredMessage:
    code: str
    text: str


@dataclass(frozen=True)
class ScrobbleResult:
    track: str
    artist: str
    timestamp: int
    # None when the response carried no usable ignoredMessage object.
    ignored_message: Optional[IgnoredMessage]

    @property
    def is_ignored(self) -> bool:
        # Code and text can disagree; either one flags the scrobble.
        msg = self.ignored_message
        return msg is None or msg.code != "0" or msg.text != ""


@dataclass(frozen=True)
class ScrobbleResponse:
    accepted: int
    ignored: int
    results: List[ScrobbleResult]

    @property
    def ignored_results(self) -> List[ScrobbleResult]:
        return [r for r in self.results if r.is_ignored]


def _text(node: Any) -> str:
    if isinstance(node, dict):
        value = node.get("#text")
        return "" if value is None else str(value)
    if node is None:
        return ""
    return str(node)


def _parse_result(item: Any) -> ScrobbleResult:
    if not isinstance(item, dict):
        return ScrobbleResult(track="", artist="", timestamp=0, ignored_message=None)
    try:
        timestamp = int(item.get("timestamp") or 0)
    except (TypeError, ValueError):
        timestamp = 0

    msg = item.get("ignoredMessage")
    ignored_message = None
    if isinstance(msg, dict):
        code = msg.get("code")
        text = msg.get("#text")
        ignored_message = IgnoredMessage(
            code="0" if code is None else str(code),
            text="" if text is None else str(text),
        )
    return ScrobbleResult(
        track=_text(item.get("track")),
        artist=_text(item.get("artist")),
        timestamp=timestamp,
        ignored_message=ignored_message,
    )


def parse_scrobble_response(raw: Any) -> ScrobbleResponse:
    """
    Turn a track.scrobble JSON body into a ScrobbleResponse.

    Last.fm sends 'scrobble' as a single object when the batch held one track
    and as a list otherwise; both become a list here.
    """
    scrobbles = raw.get("scrobbles") if isinstance(raw, dict) else None
    if not isinstance(scrobbles, dict):
        raise SubmissionError(f"Unexpected scrobble response: {raw}")
    attr = scrobbles.get("@attr")
    try:
        accepted = int(attr["accepted"])
        ignored = int(attr["ignored"])
    except (KeyError, TypeError, ValueError) as exc:
        raise SubmissionError(f"Scrobble response without accepted/ignored counts: {raw}") from exc

    payload = scrobbles.get("scrobble")
    if payload is None:
        items: List[Any] = []
    elif isinstance(payload, list):
        items = payload
    else:
        items = [payload]

    return ScrobbleResponse(accepted=accepted, ignored=ignored, results=[_parse_result(it) for it in items])


def print_scrobble_response(response: ScrobbleResponse) -> None:
    print(f"  Accepted: {response.accepted}")
    if response.ignored <= 0:
        return
    print(f"  Ignored: {response.ignored}")
    for result in response.ignored_results:
        print(f"  - {result.track} by {result.artist} at {format_unix(result.timestamp)}")
        msg = result.ignored_message
        if msg is None:
            print("    because: no ignoredMessage in response (code unknown)")
        else:
            print(f"    because: {msg.text} (code {msg.code})")

# ---------------------------
# Scrobbling
# ---------------------------

def do_scrobble(
    session: Optional[LastFmSession],
    scrobbles: Sequence[Scrobble],
    *,
    dry_run: bool = False,
) -> List[ScrobbleResponse]:
    """
    Submit every batch in order and report each outcome.

    A failing batch raises straight through: nothing after it is sent, and
    what was already accepted stays accepted.
    """
    responses: List[ScrobbleResponse] = []
    for batch_index, batch in enumerate(chunk(scrobbles, BATCH_SIZE)):
        print(f"Processing batch {batch_index}")
        print(f"  Will scrobble {len(batch)} tracks:")
        for s in batch:
            print(f"  - {s.track} by {s.artist} at {format_unix(s.timestamp)}")

        if dry_run:
            print("  Dry run: batch not submitted")
            continue

        raw = session.scrobble_many(batch)
        response = parse_scrobble_response(raw)
        print_scrobble_response(response)
        responses.append(response)

    if dry_run:
        print(f"Finished. {len(scrobbles)} scrobbles processed (dry-run).")
    else:
        accepted = sum(r.accepted for r in responses)
        ignored = sum(r.ignored for r in responses)
        print(f"Finished. {accepted} scrobbles accepted, {ignored} ignored.")
    return responses

# ---------------------------
# CLI
# ---------------------------

def parse_window_arg(value: Optional[str], flag: str) -> Optional[dt.datetime]:
    if not value:
        return None
    try:
        return parse_activity_time(value)
    except ValueError as exc:
        raise InputError(f"Invalid {flag} time '{value}' (expected ISO 8601, e.g. 2024-05-01T18:00:00)") from exc


def resolve_credentials(args: argparse.Namespace, cfg: Dict[str, str]) -> Credentials:
    """Gather everything needed to log in, once, from flags, cache, env and prompts."""
    api_key = (
        args.api_key
        or cfg.get("api_key")
        or os.getenv("LASTFM_API_KEY")
        or os.getenv("API_KEY")
        or input("Enter your Last.fm API key: ").strip()
    )
    api_secret = (
        args.api_secret
        or cfg.get("api_secret")
        or os.getenv("LASTFM_API_SECRET")
        or os.getenv("API_SECRET")
        or input("Enter your Last.fm API secret: ").strip()
    )
    session_key = args.session_key
    if not session_key and cfg.get("username") == args.username:
        session_key = cfg.get("session_key")

    password = None
    if not session_key:
        password = getpass.getpass("Last.fm password: ")

    return Credentials(
        api_key=api_key,
        api_secret=api_secret,
        username=args.username,
        password=password,
        session_key=session_key,
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Scrobble 'Listened to ...' events from an activity JSON export to Last.fm.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("username", help="Last.fm username")
    p.add_argument("activity_file", nargs="?", help="Activity JSON file")
    p.add_argument("-f", "--from", dest="start", help="Only scrobble after this time (ISO 8601)")
    p.add_argument("-t", "--to", dest="end", help="Only scrobble before this time (ISO 8601)")
    p.add_argument("--api-key", help="Last.fm API key")
    p.add_argument("--api-secret", help="Last.fm API secret")
    p.add_argument("--session-key", help="Existing Last.fm session key (skips the password prompt)")
    p.add_argument("--dry-run", action="store_true", help="Show the batches but do not log in or submit")
    p.add_argument("--debug", action="store_true", help="Write scrobble_debug.log (redacted)")
    p.add_argument("--auth-reset", action="store_true", help="Forget cached credentials and log in again")
    return p


def run(args: argparse.Namespace) -> None:
    if args.auth_reset:
        delete_config()
        print("Cleared cached credentials.")

    window = TimeWindow(
        start=parse_window_arg(args.start, "--from"),
        end=parse_window_arg(args.end, "--to"),
    )

    entries = load_activity(args.activity_file)
    scrobbles = [activity_to_scrobble(e) for e in filter_activity(entries, window)]
    print(f"Loaded {len(entries)} activity entries; {len(scrobbles)} listen events to scrobble.")

    if not scrobbles:
        print("Nothing to scrobble after filtering.")
        return

    if args.dry_run:
        do_scrobble(None, scrobbles, dry_run=True)
        return

    # API_KEY / API_SECRET may live in a .env file in the working directory.
    load_dotenv(find_dotenv(usecwd=True))
    cfg = load_config()
    credentials = resolve_credentials(args, cfg)
    session = get_lastfm_session(credentials, debug=args.debug)
    cfg.update({
        "api_key": session.api_key,
        "api_secret": session.api_secret,
        "username": args.username,
        "session_key": session.session_key,
    })
    save_config(cfg)

    do_scrobble(session, scrobbles)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        run(args)
    except ScrobblerError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1)
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        raise SystemExit(130)


if __name__ == "__main__":
    main()
