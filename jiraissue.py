#!/usr/bin/env python3
"""
Jira Issue CLI
==============
Creates Jira Cloud issues through the REST API v3, either a single issue
described by flags or a batch read from a semicolon-delimited file.

Batch file layout (first non-comment row is a header and is skipped):
  # comment lines start with '#'
  summary;description;time;epic;components;labels;fixVersionName
  Fix login;Broken on mobile;3h;PROJ-10;backend,api;bug,urgent;v1.2

Every issue in a batch is submitted concurrently. A failed issue never stops
its siblings; the run exits non-zero when any issue failed.

Environment:
  JIRA_PROJECT_KEY   project key (required)
  JIRA_API_TOKEN     API token (required)
  JIRA_ASSIGNEE_ID   default assignee account id (or --assignee)
  JIRA_EMAIL         account email; token is then sent as base64(email:token)
  JIRA_URL           base URL, e.g. https://acme.atlassian.net
  JIRA_SUBDOMAIN     used as https://<subdomain>.atlassian.net when JIRA_URL is unset

Usage:
    jiraissue --summary "Fix login" --label bug --component backend
    jiraissue --csv issues.csv --dry-run --debug
"""

import base64
import csv
import json
import os
import sys
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, TextIO

import click
import requests

DEFAULT_ISSUE_TYPE  = "Story"
DEFAULT_PRIORITY_ID = "2"
DEFAULT_TIMEOUT     = 60
# seconds between checks of the batch cancel event
CANCEL_POLL_INTERVAL = 0.05

ISSUE_API_PATH = "/rest/api/3/issue"
# Stands in for the site in dry-run output when no JIRA_URL/JIRA_SUBDOMAIN is set
PLACEHOLDER_BASE_URL = "https://your-domain.atlassian.net"

BATCH_DELIMITER = ";"
BATCH_COMMENT   = "#"
BATCH_COLUMNS   = (
    "summary", "description", "time", "epic",
    "components", "labels", "fixVersionName",
)


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class JiraIssueError(Exception):
    """Base class for every error raised by this tool."""


class ConfigurationError(JiraIssueError):
    """A required setting is missing. Raised before any network activity."""


class MalformedBatchInputError(JiraIssueError):
    """The batch source could not be read or holds a bad row."""


class SubmissionError(JiraIssueError):
    """A single issue could not be created. Recorded per issue."""


class TransportError(SubmissionError):
    """Jira could not be reached, or its reply could not be parsed."""


class APIRejectionError(SubmissionError):
    """Jira answered with a non-success status and a JSON error body."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"Jira {status_code}: {detail}")
        self.status_code = status_code
        self.detail      = detail


class ResponseParseError(SubmissionError):
    """
    Jira answered with a success status but no issue key.
    The issue may exist remotely; it is still reported as a failure.
    """


# ─────────────────────────────────────────────────────────────────────────────
# Data model
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class IssueAttributes:
    summary:          str
    project_key:      str
    assignee_id:      str
    description:      str = ""
    time_estimate:    str = ""
    epic_key:         str = ""
    issue_type:       str = DEFAULT_ISSUE_TYPE
    priority_id:      str = DEFAULT_PRIORITY_ID
    fix_version_name: str = ""
    components:       tuple = ()
    labels:           tuple = ()


@dataclass(frozen=True)
class BatchDefaults:
    """Values shared by every row of a batch; they are not file columns."""
    project_key: str
    assignee_id: str
    issue_type:  str = DEFAULT_ISSUE_TYPE
    priority_id: str = DEFAULT_PRIORITY_ID


@dataclass(frozen=True)
class SubmissionResult:
    summary:   str
    issue_key: Optional[str] = None
    error:     Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchOutcome:
    results: list = field(default_factory=list)

    @property
    def succeeded(self) -> list:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failed


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class JiraConfig:
    project_key: str
    api_token:   str
    assignee_id: str
    base_url:    str = ""
    email:       str = ""
    issue_type:  str = DEFAULT_ISSUE_TYPE
    priority_id: str = DEFAULT_PRIORITY_ID
    debug:       bool = False
    dry_run:     bool = False
    timeout:     float = DEFAULT_TIMEOUT

    @property
    def endpoint(self) -> str:
        return (self.base_url or PLACEHOLDER_BASE_URL) + ISSUE_API_PATH

    @property
    def authorization(self) -> str:
        if self.email:
            raw = f"{self.email}:{self.api_token}".encode()
            return "Basic " + base64.b64encode(raw).decode()
        return "Basic " + self.api_token

    def batch_defaults(self) -> BatchDefaults:
        return BatchDefaults(
            project_key=self.project_key,
            assignee_id=self.assignee_id,
            issue_type=self.issue_type,
            priority_id=self.priority_id,
        )


def resolve_base_url(env: Mapping) -> str:
    url = (env.get("JIRA_URL") or "").strip().rstrip("/")
    if url:
        if "://" not in url:
            url = "https://" + url
        return url
    subdomain = (env.get("JIRA_SUBDOMAIN") or "").strip()
    if subdomain:
        return f"https://{subdomain}.atlassian.net"
    return ""


def load_config(
    env:         Mapping,
    assignee_id: Optional[str] = None,
    issue_type:  Optional[str] = None,
    priority_id: Optional[str] = None,
    debug:       bool = False,
    dry_run:     bool = False,
) -> JiraConfig:
    """
    Build the run configuration from an environment mapping plus CLI overrides.
    This is the only place that looks at environment variables.
    """
    project_key = (env.get("JIRA_PROJECT_KEY") or "").strip()
    if not project_key:
        raise ConfigurationError("Environment variable JIRA_PROJECT_KEY not set")
    api_token = (env.get("JIRA_API_TOKEN") or "").strip()
    if not api_token:
        raise ConfigurationError("Environment variable JIRA_API_TOKEN not set")

    assignee = (assignee_id or env.get("JIRA_ASSIGNEE_ID") or "").strip()
    if not assignee:
        raise ConfigurationError(
            "Issue assignee should be passed in either through --assignee flag, "
            "or environment variable JIRA_ASSIGNEE_ID"
        )

    base_url = resolve_base_url(env)
    if not base_url and not dry_run:
        raise ConfigurationError(
            "Jira site unknown: set JIRA_URL or JIRA_SUBDOMAIN (or use --dry-run)"
        )

    return JiraConfig(
        project_key=project_key,
        api_token=api_token,
        assignee_id=assignee,
        base_url=base_url,
        email=(env.get("JIRA_EMAIL") or "").strip(),
        issue_type=issue_type or DEFAULT_ISSUE_TYPE,
        priority_id=priority_id or DEFAULT_PRIORITY_ID,
        debug=debug,
        dry_run=dry_run,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Payload builder
# ─────────────────────────────────────────────────────────────────────────────

def build_description_adf(text: str) -> dict:
    """Wrap plain text in a single-paragraph Atlassian Document Format doc."""
    return {
        "version": 1,
        "type":    "doc",
        "content": [{
            "type":    "paragraph",
            "content": [{"type": "text", "text": text}],
        }],
    }


def build_issue_payload(attrs: IssueAttributes) -> dict:
    """
    Turn IssueAttributes into the body of POST /rest/api/3/issue.
    Pure: callers validate summary/assignee and resolve defaults beforehand.
    """
    fields: dict = {}
    fields["summary"] = attrs.summary
    # empty ADF documents are rejected by Jira
    if attrs.description:
        fields["description"] = build_description_adf(attrs.description)
    fields["issuetype"] = {"name": attrs.issue_type}
    fields["project"]   = {"key": attrs.project_key}
    fields["priority"]  = {"id": attrs.priority_id}
    fields["assignee"]  = {"id": attrs.assignee_id}

    if attrs.epic_key:
        fields["parent"] = {"key": attrs.epic_key}

    fields["labels"] = list(attrs.labels)
    if attrs.components:
        fields["components"] = [{"name": c} for c in attrs.components]

    if attrs.fix_version_name:
        fields["fixVersions"] = [{"name": attrs.fix_version_name}]

    # Time tracking needs a Jira-side screen change before the API accepts it,
    # so attrs.time_estimate is not sent.
    return {"fields": fields}


# ─────────────────────────────────────────────────────────────────────────────
# Batch expander
# ─────────────────────────────────────────────────────────────────────────────

def split_cell_values(cell: str) -> tuple:
    """'backend, api' -> ('backend', 'api'); '' -> ()."""
    return tuple(v.strip() for v in cell.split(",") if v.strip())


class _RecordLines:
    """
    Feeds csv.reader, dropping comment and blank lines that start a record.
    Lines inside a quoted multi-line field pass through untouched; `lineno`
    is the source line last handed out.
    """

    def __init__(self, source: Iterable[str]) -> None:
        self._source   = iter(source)
        self._in_quote = False
        self.lineno    = 0

    def __iter__(self):
        return self

    def __next__(self) -> str:
        for line in self._source:
            self.lineno += 1
            if not self._in_quote and (line.startswith(BATCH_COMMENT) or not line.strip()):
                continue
            if line.count('"') % 2:
                self._in_quote = not self._in_quote
            return line
        raise StopIteration


def expand_batch(source: Iterable[str], defaults: BatchDefaults) -> list:
    """
    Parse a semicolon-delimited batch into IssueAttributes, one per data row.

    The first non-comment row is a header and is skipped unconditionally;
    columns are positional (see BATCH_COLUMNS). Any bad row fails the whole
    batch so nothing is submitted.
    """
    rows = []
    lines = _RecordLines(source)
    try:
        reader = csv.reader(lines, delimiter=BATCH_DELIMITER, skipinitialspace=True)
        for record in reader:
            if record:
                rows.append((lines.lineno, [f.lstrip() for f in record]))
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise MalformedBatchInputError(f"Could not read batch source: {exc}") from exc

    issues = []
    for lineno, record in rows[1:]:
        if len(record) < len(BATCH_COLUMNS):
            raise MalformedBatchInputError(
                f"Line {lineno}: expected {len(BATCH_COLUMNS)} fields "
                f"({';'.join(BATCH_COLUMNS)}), got {len(record)}"
            )
        summary, description, time_estimate, epic, components, labels, fix_version = (
            record[:len(BATCH_COLUMNS)]
        )
        if not summary.strip():
            raise MalformedBatchInputError(f"Line {lineno}: summary is empty")

        issues.append(IssueAttributes(
            summary=summary,
            description=description,
            time_estimate=time_estimate,
            epic_key=epic.strip(),
            components=split_cell_values(components),
            labels=split_cell_values(labels),
            fix_version_name=fix_version.strip(),
            project_key=defaults.project_key,
            assignee_id=defaults.assignee_id,
            issue_type=defaults.issue_type,
            priority_id=defaults.priority_id,
        ))
    return issues


def expand_batch_file(path: str, defaults: BatchDefaults) -> list:
    try:
        with open(path, encoding="utf-8", newline="") as fh:
            return expand_batch(fh, defaults)
    except OSError as exc:
        raise MalformedBatchInputError(f"Could not read batch file {path}: {exc}") from exc


# ─────────────────────────────────────────────────────────────────────────────
# Jira submission client
# ─────────────────────────────────────────────────────────────────────────────

def _dump_headers(headers: Mapping) -> str:
    return "\n".join(f"{k}: {v}" for k, v in headers.items())


def dump_request(req: requests.PreparedRequest) -> str:
    body = req.body.decode() if isinstance(req.body, bytes) else (req.body or "")
    return f"{req.method} {req.url}\n{_dump_headers(req.headers)}\n\n{body}"


def dump_response(resp: requests.Response) -> str:
    return (f"{resp.status_code} {resp.reason or ''}\n"
            f"{_dump_headers(resp.headers)}\n\n{resp.text}")


# one dump at a time; submissions run on many threads
_DIAG_LOCK = threading.Lock()


class JiraIssueClient:
    """
    One POST per issue against the issue-creation endpoint.
    Holds only read-only configuration, so a single instance is shared by
    every concurrent submission.
    """

    def __init__(self, config: JiraConfig, diag: Optional[TextIO] = None) -> None:
        self.config = config
        self._diag  = diag

    def _debug(self, label: str, text: str) -> None:
        stream = self._diag or sys.stderr
        with _DIAG_LOCK:
            stream.write(f"[DEBUG] {label}::> {text}\n")
            stream.flush()

    def prepare(self, payload: dict) -> requests.PreparedRequest:
        headers = {
            "Authorization": self.config.authorization,
            "Accept":        "application/json",
            "Content-Type":  "application/json",
        }
        return requests.Request(
            "POST", self.config.endpoint, headers=headers, data=json.dumps(payload),
        ).prepare()

    def submit(self, payload: dict, cancel: Optional[threading.Event] = None) -> str:
        """Create one issue and return its key, e.g. 'PROJ-123'."""
        try:
            req = self.prepare(payload)
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Invalid request for {self.config.endpoint}: {exc}") from exc
        if self.config.debug or self.config.dry_run:
            self._debug("Request", dump_request(req))

        if self.config.dry_run:
            return f"{payload['fields']['project']['key']}-dry-run"

        if cancel is not None and cancel.is_set():
            raise TransportError("Submission cancelled before it was sent")

        try:
            with requests.Session() as session:
                resp = session.send(req, timeout=self.config.timeout)
        except requests.exceptions.ConnectionError as exc:
            raise TransportError(f"Connection error: {self.config.endpoint}") from exc
        except requests.exceptions.Timeout as exc:
            raise TransportError(f"Timeout: {self.config.endpoint}") from exc
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Request failed: {exc}") from exc

        if self.config.debug:
            self._debug("Response", dump_response(resp))

        return self._issue_key_from(resp)

    def _issue_key_from(self, resp: requests.Response) -> str:
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransportError(
                f"Jira {resp.status_code}: response is not JSON: {resp.text[:200]}"
            ) from exc

        if not resp.ok:
            detail = None
            if isinstance(body, dict):
                detail = body.get("errors") or body.get("errorMessages")
            if detail:
                raise APIRejectionError(resp.status_code, json.dumps(detail, indent=2))
            raise APIRejectionError(resp.status_code, json.dumps(body)[:400])

        key = body.get("key") if isinstance(body, dict) else None
        if not isinstance(key, str) or not key:
            raise ResponseParseError("error parsing issue key from response")
        return key


# ─────────────────────────────────────────────────────────────────────────────
# Batch orchestrator
# ─────────────────────────────────────────────────────────────────────────────

def format_result(result: SubmissionResult, link_base: Optional[str] = None) -> str:
    if not result.ok:
        return f'Issue creation failed. "{result.summary}": {result.error}'
    if link_base:
        return f"Issue created. Link to issue {link_base}/browse/{result.issue_key}"
    return f"Issue created. {result.issue_key}"


def _submit_one(client, payload: dict, cancel: threading.Event) -> SubmissionResult:
    summary = payload["fields"].get("summary", "")
    try:
        key = client.submit(payload, cancel=cancel)
    except SubmissionError as exc:
        return SubmissionResult(summary=summary, error=exc)
    except Exception as exc:
        # e.g. http.client raising UnicodeEncodeError on a header value
        return SubmissionResult(summary=summary, error=TransportError(f"Unexpected error: {exc!r}"))
    return SubmissionResult(summary=summary, issue_key=key)


def _cancelled(payload: dict) -> SubmissionResult:
    return SubmissionResult(
        summary=payload["fields"].get("summary", ""),
        error=TransportError("Submission cancelled; the issue may or may not have been created"),
    )


def run_batch(
    payloads:  list,
    client,
    link_base: Optional[str] = None,
    cancel:    Optional[threading.Event] = None,
    out:       Optional[TextIO] = None,
    err:       Optional[TextIO] = None,
) -> BatchOutcome:
    """
    Submit every payload concurrently, one worker per issue.

    Each result is printed as soon as it completes; the call returns only
    once all submissions have reported. Failures never cancel siblings.
    Results in the outcome keep the order of `payloads`.

    Setting `cancel` stops the wait: submissions still outstanding are
    reported as cancelled and their worker threads are abandoned.
    On KeyboardInterrupt the event is set and the interrupt re-raised.
    """
    if not payloads:
        return BatchOutcome()

    cancel  = cancel or threading.Event()
    results: list = [None] * len(payloads)

    def report(i: int, result: SubmissionResult) -> None:
        results[i] = result
        stream = (out or sys.stdout) if result.ok else (err or sys.stderr)
        print(format_result(result, link_base), file=stream, flush=True)

    pool = ThreadPoolExecutor(max_workers=len(payloads))
    futures = {
        pool.submit(_submit_one, client, p, cancel): i
        for i, p in enumerate(payloads)
    }
    pending = set(futures)
    try:
        while pending and not cancel.is_set():
            done, pending = wait(pending, timeout=CANCEL_POLL_INTERVAL,
                                 return_when=FIRST_COMPLETED)
            for fut in done:
                report(futures[fut], fut.result())
    except KeyboardInterrupt:
        cancel.set()
        raise
    finally:
        pool.shutdown(wait=not cancel.is_set(), cancel_futures=True)

    for fut in pending:
        i = futures[fut]
        if fut.done() and not fut.cancelled():
            report(i, fut.result())
        else:
            report(i, _cancelled(payloads[i]))

    return BatchOutcome(results=results)


def create_issues(
    config:     JiraConfig,
    attributes: list,
    out:        Optional[TextIO] = None,
    err:        Optional[TextIO] = None,
    cancel:     Optional[threading.Event] = None,
) -> BatchOutcome:
    """Build payloads for `attributes` and submit them as one batch."""
    if not config.project_key or not config.api_token:
        raise ConfigurationError("JIRA_PROJECT_KEY and JIRA_API_TOKEN are required")

    payloads = [build_issue_payload(a) for a in attributes]
    client   = JiraIssueClient(config, diag=err)
    outcome  = run_batch(payloads, client, link_base=config.base_url or None,
                         cancel=cancel, out=out, err=err)

    summary_line = f"Created {len(outcome.succeeded)} of {len(outcome.results)} issue(s)."
    print(summary_line, file=(out or sys.stdout) if outcome.ok else (err or sys.stderr))
    return outcome


# ─────────────────────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────────────────────

EXIT_ISSUE_FAILED = 1
EXIT_BAD_INPUT    = 2


def _fail(message: str, code: int) -> None:
    click.echo(click.style("Error: ", fg="red") + message, err=True)
    raise SystemExit(code)


@click.command("jiraissue")
@click.option("--summary", "-s", default="", help="Summary of the issue (required without --csv)")
@click.option("--time", "-t", "time_estimate", default="", help="Time estimation")
@click.option("--description", "-d", default="", help="Description of the issue")
@click.option("--epic", "-e", default="", help="Epic key the issue is linked under")
@click.option("--assignee", default=None, help="Issue assignee id (default: JIRA_ASSIGNEE_ID)")
@click.option("--component", "-c", multiple=True, help="Component name, repeatable")
@click.option("--label", "-l", multiple=True, help="Label, repeatable")
@click.option("--fix-version", default="", help="Fix version name")
@click.option("--issue-type", default=DEFAULT_ISSUE_TYPE, show_default=True)
@click.option("--priority", default=DEFAULT_PRIORITY_ID, show_default=True, help="Priority id")
@click.option("--csv", "csv_path", type=click.Path(dir_okay=False), default=None,
              help="Semicolon-delimited batch file; takes precedence over single-issue flags")
@click.option("--debug", is_flag=True, help="Dump API requests and responses to stderr")
@click.option("--dry-run", is_flag=True, help="Build and show requests without sending them")
def main(summary, time_estimate, description, epic, assignee, component, label,
         fix_version, issue_type, priority, csv_path, debug, dry_run) -> None:
    """Create Jira issues from flags or from a batch file."""
    try:
        config = load_config(
            os.environ, assignee_id=assignee, issue_type=issue_type,
            priority_id=priority, debug=debug, dry_run=dry_run,
        )
        if csv_path:
            attributes = expand_batch_file(csv_path, config.batch_defaults())
        elif not summary.strip():
            raise ConfigurationError("When creating a single issue --summary is required")
        else:
            attributes = [IssueAttributes(
                summary=summary,
                description=description,
                time_estimate=time_estimate,
                epic_key=epic,
                components=tuple(component),
                labels=tuple(label),
                fix_version_name=fix_version,
                project_key=config.project_key,
                assignee_id=config.assignee_id,
                issue_type=config.issue_type,
                priority_id=config.priority_id,
            )]
    except (ConfigurationError, MalformedBatchInputError) as exc:
        _fail(str(exc), EXIT_BAD_INPUT)

    outcome = create_issues(config, attributes)
    if not outcome.ok:
        raise SystemExit(EXIT_ISSUE_FAILED)


if __name__ == "__main__":
    main()
