from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import os
import subprocess
from typing import Any
from urllib.request import Request, urlopen

from .errors import MutationRejected, ProfileLookupFailure, SubscriptionUnavailable, TransientFetchFailure
from .models import (
    ACTION_MARK_ALL_READ,
    ACTION_MARK_READ,
    ACTION_POST,
    REFRESH_EVENT_KINDS,
    MutationResult,
    Profile,
    RoomSnapshot,
    is_unassigned,
    message_from_fields,
    normalize_address,
)
from .room.base import EventKindHandler, Unsubscribe
from .runtime.events import EventBus
from .runtime.tasks import cancel_task


SUI_CLOCK_OBJECT_ID = "0x6"
SUI_RPC_TIMEOUT_S = 20.0
SUI_CLI_TIMEOUT_S = 75.0
SUI_EVENT_PAGE_LIMIT = 50

MOVE_FUNCTIONS = {
    ACTION_POST: "send_message",
    ACTION_MARK_READ: "mark_as_read",
    ACTION_MARK_ALL_READ: "mark_all_as_read",
}


class SuiRpcError(RuntimeError):
    pass


class SuiRpcClient:
    """Minimal Sui JSON-RPC client; blocking HTTP runs in a worker thread."""

    def __init__(self, rpc_url: str, *, timeout_s: float = SUI_RPC_TIMEOUT_S) -> None:
        self.rpc_url = rpc_url
        self.timeout_s = max(1.0, float(timeout_s))
        self._ids = itertools.count(1)

    async def call(self, method: str, params: list[Any]) -> Any:
        return await asyncio.to_thread(self._call_sync, method, params)

    def _call_sync(self, method: str, params: list[Any]) -> Any:
        body = json.dumps(
            {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        ).encode("utf-8")
        request = Request(
            self.rpc_url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urlopen(request, timeout=self.timeout_s) as response:
            if response.status >= 400:
                raise SuiRpcError(f"{method} returned {response.status} {response.reason}")
            data = response.read()
        payload: Any = json.loads(data.decode("utf-8"))
        if not isinstance(payload, dict):
            raise SuiRpcError(f"{method} returned a non-object payload")
        error = payload.get("error")
        if isinstance(error, dict):
            raise SuiRpcError(f"{method} failed: {error.get('message') or error}")
        return payload.get("result")


def snapshot_from_object(room_id: str, result: Any) -> RoomSnapshot:
    if not isinstance(result, dict) or isinstance(result.get("error"), dict):
        return RoomSnapshot(room_id=room_id, found=False)
    data = result.get("data")
    if not isinstance(data, dict):
        return RoomSnapshot(room_id=room_id, found=False)
    content = data.get("content")
    fields = content.get("fields") if isinstance(content, dict) else None
    raw_messages = fields.get("messages") if isinstance(fields, dict) else None
    if not isinstance(raw_messages, list):
        return RoomSnapshot(room_id=room_id)
    messages = []
    for position, raw in enumerate(raw_messages):
        message = message_from_fields(position, raw)
        if message is not None:
            messages.append(message)
    return RoomSnapshot(room_id=room_id, messages=tuple(messages))


def event_kind(event_type: Any) -> str | None:
    text = str(event_type or "")
    for kind in REFRESH_EVENT_KINDS:
        if text.endswith(f"::{kind}"):
            return kind
    return None


def profile_from_owned_objects(address: str, result: Any) -> Profile | None:
    entries = result.get("data") if isinstance(result, dict) else None
    if not isinstance(entries, list):
        return None
    for entry in entries:
        data = entry.get("data") if isinstance(entry, dict) else None
        content = data.get("content") if isinstance(data, dict) else None
        fields = content.get("fields") if isinstance(content, dict) else None
        if not isinstance(fields, dict):
            continue
        username = " ".join(str(fields.get("username") or "").split())
        if not username:
            continue
        return Profile(address=address, username=username, avatar_url=str(fields.get("avatar_url") or ""))
    return None


class SuiLedgerQuery:
    def __init__(self, rpc: SuiRpcClient) -> None:
        self.rpc = rpc

    async def fetch_snapshot(self, room_id: str) -> RoomSnapshot:
        try:
            result = await self.rpc.call("sui_getObject", [room_id, {"showContent": True, "showType": True}])
        except Exception as exc:  # noqa: BLE001
            raise TransientFetchFailure(f"sui_getObject {room_id}: {_summarize_error_text(str(exc))}") from exc
        return snapshot_from_object(room_id, result)


class SuiProfileDirectory:
    """Looks up the `Profile` object a participant owns under the chat package."""

    def __init__(self, rpc: SuiRpcClient, *, package_id: str, module: str) -> None:
        self.rpc = rpc
        self.package_id = package_id
        self.module = module

    @property
    def struct_type(self) -> str:
        return f"{self.package_id}::{self.module}::Profile"

    async def resolve_profile(self, address: str) -> Profile | None:
        if is_unassigned(self.package_id):
            return None
        owner = normalize_address(address)
        params = [
            owner,
            {"filter": {"StructType": self.struct_type}, "options": {"showContent": True, "showType": True}},
            None,
            1,
        ]
        try:
            result = await self.rpc.call("suix_getOwnedObjects", params)
        except Exception as exc:  # noqa: BLE001
            raise ProfileLookupFailure(owner, _summarize_error_text(str(exc))) from exc
        return profile_from_owned_objects(owner, result)


class SuiEventChannel:
    """Follows module events by polling `suix_queryEvents` from a cursor.

    Establishing the subscription means reading the newest event id once; only
    events after it are delivered. Later query failures are tolerated and the
    follow loop keeps going.
    """

    def __init__(
        self,
        rpc: SuiRpcClient,
        *,
        poll_interval_s: float = 2.0,
        page_limit: int = SUI_EVENT_PAGE_LIMIT,
        event_bus: EventBus | None = None,
    ) -> None:
        self.rpc = rpc
        self.poll_interval_s = max(0.05, float(poll_interval_s))
        self.page_limit = max(1, int(page_limit))
        self.event_bus = event_bus
        self.failures = 0

    async def subscribe(self, scope: str, on_event: EventKindHandler) -> Unsubscribe:
        package, _, module = (scope or "").partition("::")
        if is_unassigned(package) or not module:
            raise SubscriptionUnavailable(f"no contract package configured for scope {scope!r}")
        query = {"MoveModule": {"package": package, "module": module}}
        try:
            page = await self.rpc.call("suix_queryEvents", [query, None, 1, True])
        except Exception as exc:  # noqa: BLE001
            raise SubscriptionUnavailable(f"suix_queryEvents: {_summarize_error_text(str(exc))}") from exc

        cursor = None
        entries = page.get("data") if isinstance(page, dict) else None
        if isinstance(entries, list) and entries and isinstance(entries[0], dict):
            cursor = entries[0].get("id")

        task = asyncio.create_task(self._follow(query, cursor, on_event), name="ledgerchat-sui-events")

        async def _unsubscribe() -> None:
            await cancel_task(task)

        return _unsubscribe

    async def _follow(self, query: dict[str, Any], cursor: Any, on_event: EventKindHandler) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_s)
            try:
                page = await self.rpc.call("suix_queryEvents", [query, cursor, self.page_limit, False])
            except Exception as exc:  # noqa: BLE001
                self.failures += 1
                if self.event_bus is not None:
                    self.event_bus.publish_event(
                        "ledger.events.poll_failed",
                        f"Event query failed: {_summarize_error_text(str(exc))}",
                        severity="debug",
                        source="sui",
                        metadata={"failures": self.failures},
                    )
                continue
            if not isinstance(page, dict):
                continue
            entries = page.get("data")
            for entry in entries if isinstance(entries, list) else []:
                kind = event_kind(entry.get("type")) if isinstance(entry, dict) else None
                if kind is None:
                    continue
                with contextlib.suppress(Exception):
                    on_event(kind)
            next_cursor = page.get("nextCursor")
            if next_cursor:
                cursor = next_cursor


class SuiCliMutationService:
    """Submits room mutations with `sui client call`, signed by the CLI's active address."""

    def __init__(
        self,
        *,
        package_id: str,
        module: str,
        cli: str = "sui",
        gas_budget: int = 10_000_000,
        timeout_s: float = SUI_CLI_TIMEOUT_S,
        env: dict[str, str] | None = None,
    ) -> None:
        self.package_id = package_id
        self.module = module
        self.cli = cli
        self.gas_budget = int(gas_budget)
        self.timeout_s = float(timeout_s)
        self.env = env if env is not None else os.environ.copy()

    def command_for(self, room_id: str, action: str, args: dict[str, Any]) -> list[str]:
        function = MOVE_FUNCTIONS.get(action)
        if function is None:
            raise ValueError(f"unknown room action: {action}")
        if action == ACTION_POST:
            call_args = [room_id, str(args.get("text") or ""), SUI_CLOCK_OBJECT_ID]
        elif action == ACTION_MARK_READ:
            call_args = [room_id, str(int(args["position"]))]
        else:
            call_args = [room_id]
        return [
            self.cli,
            "client",
            "call",
            "--package",
            self.package_id,
            "--module",
            self.module,
            "--function",
            function,
            "--args",
            *call_args,
            "--gas-budget",
            str(self.gas_budget),
            "--json",
        ]

    async def submit(self, room_id: str, action: str, args: dict[str, Any]) -> MutationResult:
        if is_unassigned(self.package_id):
            return MutationResult(accepted=False, reason="chat contract package is not configured")
        if is_unassigned(room_id):
            return MutationResult(accepted=False, reason="room is not available yet")
        try:
            cmd = self.command_for(room_id, action, args)
        except (KeyError, TypeError, ValueError) as exc:
            return MutationResult(accepted=False, reason=f"invalid {action} request: {exc}")
        try:
            proc = await asyncio.to_thread(_run_process, cmd, self.env, self.timeout_s)
        except FileNotFoundError:
            return MutationResult(accepted=False, reason=f"wallet CLI `{self.cli}` not found")
        except subprocess.TimeoutExpired:
            return MutationResult(accepted=False, reason=f"wallet CLI timed out after {self.timeout_s:g}s")
        return mutation_result_from_output(action, proc)


def mutation_result_from_output(action: str, proc: subprocess.CompletedProcess[str]) -> MutationResult:
    if proc.returncode != 0:
        detail = proc.stderr.strip() or proc.stdout.strip() or f"exit={proc.returncode}"
        raise MutationRejected(_summarize_error_text(detail), action=action)
    payload = _extract_first_json_value(proc.stdout)
    if not isinstance(payload, dict):
        raise MutationRejected("transaction returned no JSON payload", action=action)
    effects = payload.get("effects") if isinstance(payload.get("effects"), dict) else {}
    status = effects.get("status") if isinstance(effects.get("status"), dict) else {}
    if str(status.get("status") or "").lower() != "success":
        reason = str(status.get("error") or status.get("status") or "transaction failed")
        raise MutationRejected(_summarize_error_text(reason), action=action)
    return MutationResult(accepted=True, digest=str(payload.get("digest") or ""))


def _run_process(cmd: list[str], env: dict[str, str], timeout_s: float) -> subprocess.CompletedProcess[str]:
    timeout = None if timeout_s <= 0 else float(timeout_s)
    return subprocess.run(
        cmd,
        check=False,
        capture_output=True,
        text=True,
        env=env,
        timeout=timeout,
    )


def _extract_first_json_value(text: str) -> Any | None:
    source = text or ""
    decoder = json.JSONDecoder()
    for idx, char in enumerate(source):
        if char not in "[{":
            continue
        with contextlib.suppress(Exception):
            value, _end = decoder.raw_decode(source[idx:])
            return value
    return None


def _summarize_error_text(value: str, limit: int = 220) -> str:
    text = " ".join((value or "").split())
    if not text:
        return "no details available"
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
