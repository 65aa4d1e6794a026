"""Canned multi-step workflows run through a proxy caller.

A workflow is an explicit sequence of named steps. Every step is recorded
in a :class:`WorkflowReport`; when a step fails the remaining steps are
skipped and completed steps that registered a compensating action are
undone in reverse order. Read-back verification uses bounded retries with
exponential backoff and reports ``unresolved`` instead of failing.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

import anyio
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .relay import ProxyCaller, RelayError

logger = logging.getLogger("connectgateway.workflows")

CHANNELS_TO_SHEET = "channels-to-sheet"
CONTACT_FORM = "contact-form"

MESSAGING_APP = "slack"
SPREADSHEET_APP = "google_sheets"

CHANNEL_HEADER = ["Channel Name", "Channel ID", "Members Count", "Created Date", "Is Private"]
MAX_EXPORTED_CHANNELS = 20
VERIFY_RANGE = "A1:E10"
MAX_VERIFY_WAIT = 30.0


class WorkflowStepError(RuntimeError):
    """Raised when a workflow step fails; carries the failing step's name."""

    def __init__(self, message: str, *, step: str | None = None) -> None:
        super().__init__(message)
        self.step = step


@dataclass
class StepRecord:
    name: str
    status: str
    result: Any = None
    error: Optional[str] = None


@dataclass
class VerificationResult:
    status: str
    attempts: int
    rows: int = 0
    error: Optional[str] = None


@dataclass
class WorkflowReport:
    workflow: str
    status: str = "running"
    steps: List[StepRecord] = field(default_factory=list)
    result: Dict[str, Any] = field(default_factory=dict)
    verification: Optional[VerificationResult] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _Compensation:
    record: StepRecord
    action: Callable[[], Awaitable[Any]]
    resource: Optional[str] = None


class WorkflowRun:
    """Execute steps in order while keeping a log of what has been done."""

    def __init__(self, workflow: str, *, compensate: bool = True) -> None:
        self.report = WorkflowReport(workflow=workflow)
        self._compensate = compensate
        self._compensations: List[_Compensation] = []

    async def step(
        self,
        name: str,
        action: Callable[[], Awaitable[Any]],
        *,
        compensation: Callable[[Any], Awaitable[Any]] | None = None,
        resource: Callable[[Any], Optional[str]] | None = None,
        summary: Callable[[Any], Any] | None = None,
    ) -> Any:
        record = StepRecord(name=name, status="running")
        self.report.steps.append(record)
        try:
            result = await action()
        except Exception as exc:
            record.status = "failed"
            record.error = str(exc)
            logger.warning("Workflow %s step %s failed: %s", self.report.workflow, name, exc)
            if isinstance(exc, WorkflowStepError):
                exc.step = name
                raise
            raise WorkflowStepError(str(exc), step=name) from exc

        record.status = "completed"
        record.result = summary(result) if summary is not None else None
        if compensation is not None:
            self._compensations.append(
                _Compensation(
                    record=record,
                    action=lambda: compensation(result),
                    resource=resource(result) if resource is not None else None,
                )
            )
        return result

    async def fail(self, exc: WorkflowStepError) -> WorkflowReport:
        self.report.status = "failed"
        self.report.error = str(exc)
        if not self._compensate:
            orphaned = [item.resource for item in self._compensations if item.resource]
            if orphaned:
                self.report.result["orphaned_resources"] = orphaned
            return self.report

        for item in reversed(self._compensations):
            try:
                await item.action()
            except Exception as comp_exc:
                item.record.status = "compensation_failed"
                item.record.error = str(comp_exc)
                logger.error(
                    "Compensation for %s step %s failed: %s",
                    self.report.workflow,
                    item.record.name,
                    comp_exc,
                )
                if item.resource:
                    self.report.result.setdefault("orphaned_resources", []).append(item.resource)
            else:
                item.record.status = "compensated"
                if item.resource:
                    self.report.result.setdefault("compensated_resources", []).append(item.resource)
        self._compensations.clear()
        return self.report

    def complete(self) -> WorkflowReport:
        self.report.status = "completed"
        return self.report


def expect_ok(payload: Any, action: str) -> Dict[str, Any]:
    """Validate a Slack-style ``{"ok": bool}`` response."""
    if not isinstance(payload, dict):
        raise WorkflowStepError(f"Failed to {action}: unexpected response")
    if not payload.get("ok"):
        raise WorkflowStepError(f"Failed to {action}: {payload.get('error') or 'unknown error'}")
    return payload


def spreadsheet_url(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit"


def _created_date(created: Any) -> str:
    if not created:
        return "N/A"
    try:
        return datetime.fromtimestamp(int(created), tz=timezone.utc).date().isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return "N/A"


def channel_rows(channels: Sequence[Mapping[str, Any]], *, limit: int = MAX_EXPORTED_CHANNELS) -> List[List[str]]:
    rows = [list(CHANNEL_HEADER)]
    for channel in list(channels)[:limit]:
        members = channel.get("num_members")
        rows.append(
            [
                str(channel.get("name") or "N/A"),
                str(channel.get("id") or "N/A"),
                str(members) if members else "N/A",
                _created_date(channel.get("created")),
                "Yes" if channel.get("is_private") else "No",
            ]
        )
    return rows


def update_cells_request(sheet_id: int, rows: Sequence[Sequence[str]]) -> Dict[str, Any]:
    return {
        "requests": [
            {
                "updateCells": {
                    "start": {"sheetId": sheet_id, "rowIndex": 0, "columnIndex": 0},
                    "rows": [
                        {"values": [{"userEnteredValue": {"stringValue": str(cell)}} for cell in row]}
                        for row in rows
                    ],
                    "fields": "userEnteredValue",
                }
            }
        ]
    }


def new_spreadsheet_body(title: str, sheet_title: str = "Sheet1", *, rows: int | None = None, columns: int | None = None) -> Dict[str, Any]:
    sheet_properties: Dict[str, Any] = {"title": sheet_title}
    if rows is not None and columns is not None:
        sheet_properties["gridProperties"] = {"rowCount": rows, "columnCount": columns}
    return {"properties": {"title": title}, "sheets": [{"properties": sheet_properties}]}


class _NotYetVisible(Exception):
    def __init__(self, rows: int) -> None:
        super().__init__(f"only {rows} row(s) visible")
        self.rows = rows


async def verify_values(
    caller: ProxyCaller,
    *,
    account_id: str,
    external_user_id: str,
    spreadsheet_id: str,
    value_range: str = VERIFY_RANGE,
    attempts: int = 3,
    delay: float = 1.0,
) -> VerificationResult:
    """Poll the written range until more than the header row is visible.

    Any read failure other than a rejected request is retried; the outcome is
    always reported, never raised.
    """
    attempt_number = 0
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=delay, max=MAX_VERIFY_WAIT),
        retry=retry_if_not_exception_type(RelayError),
        before_sleep=before_sleep_log(logger, logging.INFO),
        sleep=anyio.sleep,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                payload = await caller.request(
                    account_id,
                    f"spreadsheets/{spreadsheet_id}/values/{value_range}",
                    external_user_id=external_user_id,
                    method="GET",
                )
                values = payload.get("values") if isinstance(payload, dict) else None
                rows = len(values) if isinstance(values, list) else 0
                if rows <= 1:
                    raise _NotYetVisible(rows)
    except _NotYetVisible as exc:
        return VerificationResult(
            status="unresolved",
            attempts=attempt_number,
            rows=exc.rows,
            error="Only the header row was visible" if exc.rows == 1 else "No data was visible",
        )
    except Exception as exc:
        logger.warning("Read-back of spreadsheet %s failed: %s", spreadsheet_id, exc)
        return VerificationResult(status="unresolved", attempts=attempt_number, error=str(exc))

    return VerificationResult(status="verified", attempts=attempt_number, rows=rows)


async def run_channels_to_sheet(
    caller: ProxyCaller,
    *,
    external_user_id: str,
    messaging_account_id: str,
    spreadsheet_account_id: str,
    compensate: bool = True,
    verify_attempts: int = 3,
    verify_delay: float = 1.0,
    today: date | None = None,
) -> WorkflowReport:
    """Export the messaging account's channels into a new spreadsheet."""
    run = WorkflowRun(CHANNELS_TO_SHEET, compensate=compensate)
    export_date = (today or date.today()).isoformat()

    async def call(account_id: str, endpoint: str, method: str = "GET", data: Any = None) -> Any:
        return await caller.request(
            account_id,
            endpoint,
            external_user_id=external_user_id,
            method=method,
            data=data,
        )

    async def list_channels() -> Dict[str, Any]:
        return expect_ok(await call(messaging_account_id, "conversations.list"), "get Slack channels")

    async def create_sheet() -> Dict[str, Any]:
        payload = await call(
            spreadsheet_account_id,
            "spreadsheets",
            "POST",
            new_spreadsheet_body(
                f"Slack Channels Export - {export_date}",
                "Channels",
                rows=100,
                columns=10,
            ),
        )
        if not isinstance(payload, dict) or not payload.get("spreadsheetId"):
            raise WorkflowStepError("Failed to create Google Sheet")
        run.report.result["spreadsheet_id"] = payload["spreadsheetId"]
        run.report.result["spreadsheet_url"] = spreadsheet_url(payload["spreadsheetId"])
        return payload

    async def delete_sheet(sheet: Dict[str, Any]) -> Any:
        deleted = await call(spreadsheet_account_id, f"files/{sheet['spreadsheetId']}", "DELETE")
        run.report.result.pop("spreadsheet_id", None)
        run.report.result.pop("spreadsheet_url", None)
        return deleted

    try:
        channels_payload = await run.step(
            "list_channels",
            list_channels,
            summary=lambda payload: {"channels": len(payload.get("channels") or [])},
        )
        sheet = await run.step(
            "create_spreadsheet",
            create_sheet,
            compensation=delete_sheet,
            resource=lambda payload: spreadsheet_url(payload["spreadsheetId"]),
            summary=lambda payload: {"spreadsheet_id": payload["spreadsheetId"]},
        )
        first_sheet = (sheet.get("sheets") or [{}])[0]
        sheet_id = (first_sheet.get("properties") or {}).get("sheetId") or 0
        rows = channel_rows(channels_payload.get("channels") or [])

        async def write_rows() -> Any:
            return await call(
                spreadsheet_account_id,
                f"spreadsheets/{sheet['spreadsheetId']}:batchUpdate",
                "POST",
                update_cells_request(sheet_id, rows),
            )

        await run.step(
            "write_channels",
            write_rows,
            summary=lambda payload: {
                "rows": len(rows),
                "replies": len(payload.get("replies") or []) if isinstance(payload, dict) else 0,
            },
        )
    except WorkflowStepError as exc:
        return await run.fail(exc)

    run.report.result["channel_count"] = len(rows) - 1
    run.report.verification = await verify_values(
        caller,
        account_id=spreadsheet_account_id,
        external_user_id=external_user_id,
        spreadsheet_id=sheet["spreadsheetId"],
        attempts=verify_attempts,
        delay=verify_delay,
    )
    if run.report.verification.status != "verified":
        logger.warning(
            "Spreadsheet %s could not be verified after %s attempt(s)",
            sheet["spreadsheetId"],
            run.report.verification.attempts,
        )
    return run.complete()


def default_contact_form(now: datetime | None = None) -> Dict[str, str]:
    moment = now or datetime.now(timezone.utc)
    return {
        "name": "Test User",
        "email": "test@example.com",
        "message": "This is a test contact form submission from Pipedream Connect!",
        "timestamp": moment.isoformat(),
    }


def _format_timestamp(raw: str) -> str:
    try:
        moment = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return raw
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
        return moment.strftime("%Y-%m-%d %H:%M:%S UTC")
    return moment.strftime("%Y-%m-%d %H:%M:%S")


def format_contact_message(form: Mapping[str, Any]) -> str:
    return (
        "📋 *New Contact Form Submission*\n\n"
        f"*Name:* {form.get('name', '')}\n"
        f"*Email:* {form.get('email', '')}\n"
        f"*Message:* {form.get('message', '')}\n"
        f"*Time:* {_format_timestamp(str(form.get('timestamp', '')))}"
    )


async def run_contact_form(
    caller: ProxyCaller,
    *,
    external_user_id: str,
    messaging_account_id: str,
    channel: str = "general",
    form: Mapping[str, Any] | None = None,
) -> WorkflowReport:
    """Post a formatted contact form submission to a messaging channel."""
    run = WorkflowRun(CONTACT_FORM)
    record = dict(form) if form else default_contact_form()
    record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

    async def post_message() -> Dict[str, Any]:
        payload = await caller.request(
            messaging_account_id,
            "chat.postMessage",
            external_user_id=external_user_id,
            method="POST",
            data={"channel": channel, "text": format_contact_message(record)},
        )
        return expect_ok(payload, "send Slack message")

    try:
        message = await run.step(
            "post_message",
            post_message,
            summary=lambda payload: {"channel": payload.get("channel"), "ts": payload.get("ts")},
        )
    except WorkflowStepError as exc:
        return await run.fail(exc)

    run.report.result.update({"channel": message.get("channel") or channel, "ts": message.get("ts")})
    return run.complete()


__all__ = [
    "CHANNELS_TO_SHEET",
    "CONTACT_FORM",
    "MESSAGING_APP",
    "SPREADSHEET_APP",
    "StepRecord",
    "VerificationResult",
    "WorkflowReport",
    "WorkflowRun",
    "WorkflowStepError",
    "channel_rows",
    "default_contact_form",
    "expect_ok",
    "format_contact_message",
    "new_spreadsheet_body",
    "run_channels_to_sheet",
    "run_contact_form",
    "spreadsheet_url",
    "update_cells_request",
    "verify_values",
]
