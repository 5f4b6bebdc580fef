"""Batch engine: many commands, few physical requests.

Commands are split into chunks of at most ``max_batch_commands``. Chunks are
sent one after another; ``$result[Name][path]`` references to a command of
an earlier chunk are substituted client-side with the value already received,
references inside the same chunk are left for the server to resolve.

Usage:
    engine = BatchEngine(dispatcher)
    envelope = await engine.call_batch(
        {
            "deal": ("crm.deal.get", {"id": 10}),
            "company": ("crm.company.get", {"id": "$result[deal][COMPANY_ID]"}),
        },
        is_halt_on_error=True,
    )
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from b24sdk.core.errors import ConfigurationError, ErrorMessage
from b24sdk.core.logging import log_event
from b24sdk.core.models import ApiVersion, Command
from b24sdk.core.rate_limiter import BATCH_PREFIX
from b24sdk.core.result import ResultEnvelope
from b24sdk.integrations.rest.versions import get_strategy

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Mapping, Sequence

    from b24sdk.integrations.rest.dispatcher import CallDispatcher

logger = logging.getLogger(__name__)

MAX_BATCH_COMMANDS = 50

REFERENCE_RE = re.compile(r"\$result\[([^\[\]]+)\]((?:\[[^\[\]]*\])*)")
PATH_SEGMENT_RE = re.compile(r"\[([^\[\]]*)\]")

UNRESOLVED_REFERENCE = "UNRESOLVED_REFERENCE"
NOT_EXECUTED = "BATCH_COMMAND_NOT_EXECUTED"


class _Unresolved(Exception):
    """A reference points to a command without a usable result."""

    def __init__(self, target: str, reason: str):
        super().__init__(f"$result[{target}]: {reason}")
        self.target = target
        self.reason = reason


@dataclass
class _ChunkContext:
    """What the resolver may use while preparing one chunk."""

    known: dict[str, Any]
    failed: set[str]
    chunk_keys: set[str]
    # array batches only: global index -> position inside the physical request
    local_index: dict[str, int] = field(default_factory=dict)
    named: bool = True


def find_references(value: Any) -> list[str]:
    """Names (or indexes) referenced by ``$result[...]`` tokens anywhere in ``value``."""
    found: list[str] = []
    if isinstance(value, str):
        found.extend(match.group(1) for match in REFERENCE_RE.finditer(value))
    elif isinstance(value, dict):
        for key, item in value.items():
            found.extend(find_references(key))
            found.extend(find_references(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(find_references(item))
    return found


def _walk(result: Any, path: str, target: str) -> Any:
    current = result
    for segment in PATH_SEGMENT_RE.findall(path):
        if isinstance(current, dict):
            if segment in current:
                current = current[segment]
                continue
            if segment.isdigit() and int(segment) in current:
                current = current[int(segment)]
                continue
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
            continue
        raise _Unresolved(target, f"path {path} not found in result")
    return current


def _substitute_string(text: str, ctx: _ChunkContext) -> Any:
    whole = REFERENCE_RE.fullmatch(text)
    if whole is not None:
        resolved = _resolve_token(whole, ctx)
        return resolved if resolved is not _KEEP else _rewrite_token(whole, ctx)

    def repl(match: re.Match[str]) -> str:
        resolved = _resolve_token(match, ctx)
        if resolved is _KEEP:
            return _rewrite_token(match, ctx)
        return "" if resolved is None else str(resolved)

    return REFERENCE_RE.sub(repl, text)


_KEEP = object()


def _resolve_token(match: re.Match[str], ctx: _ChunkContext) -> Any:
    target, path = match.group(1), match.group(2)
    if target in ctx.chunk_keys:
        if target in ctx.failed:
            raise _Unresolved(target, "referenced command was not sent")
        return _KEEP
    if target in ctx.failed:
        raise _Unresolved(target, "referenced command failed")
    if target not in ctx.known:
        raise _Unresolved(target, "referenced command has no result")
    return _walk(ctx.known[target], path, target)


def _rewrite_token(match: re.Match[str], ctx: _ChunkContext) -> str:
    if ctx.named:
        return match.group(0)
    # Positional references are relative to the physical request.
    return f"$result[{ctx.local_index[match.group(1)]}]{match.group(2)}"


def resolve_references(value: Any, ctx: _ChunkContext) -> Any:
    """Substitute references to earlier chunks; keep same-chunk ones for the server."""
    if isinstance(value, str):
        return _substitute_string(value, ctx)
    if isinstance(value, dict):
        return {key: resolve_references(item, ctx) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_references(item, ctx) for item in value]
    return value


class BatchEngine:
    """Runs named or positional batches over a ``CallDispatcher``.

    Args:
        dispatcher: Shared dispatcher (batches use the same limiter as single calls)
        max_batch_commands: Commands per physical request, 1..50
    """

    def __init__(self, dispatcher: CallDispatcher, *, max_batch_commands: int = MAX_BATCH_COMMANDS):
        if not 1 <= max_batch_commands <= MAX_BATCH_COMMANDS:
            raise ConfigurationError(
                error_code="INVALID_BATCH_SIZE",
                message=f"max_batch_commands must be within 1..{MAX_BATCH_COMMANDS}, got {max_batch_commands}",
            )
        self.dispatcher = dispatcher
        self.max_batch_commands = max_batch_commands

    async def call_batch(
        self,
        commands: Mapping[str, Any] | Sequence[Any],
        *,
        is_halt_on_error: bool = True,
        return_ajax_result: bool = False,
        version: ApiVersion | str | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResultEnvelope:
        """Execute ``commands`` and aggregate the per-command outcomes.

        ``commands`` is either a mapping ``name -> command`` or a sequence of
        commands (addressed by index). A command is a ``Command``, a
        ``(method, params)`` pair or ``{"method": ..., "params": ...}``.

        For a mapping, the returned envelope's ``data`` maps each key to the
        command's result; for a sequence it is the list of successful results
        in input order. With ``return_ajax_result`` every sent command's own
        ``ResultEnvelope`` is kept instead, failed ones included. Failed
        commands are reported in ``errors`` with their key.

        Raises:
            ConfigurationError: a reference names a command that is not declared
                earlier in the batch. Nothing is sent in that case.
        """
        named = not isinstance(commands, (list, tuple))
        if named:
            entries = [(str(key), Command.coerce(value)) for key, value in commands.items()]  # type: ignore[union-attr]
        else:
            entries = [(str(index), Command.coerce(value)) for index, value in enumerate(commands)]

        self._validate_references(entries)

        api_version = ApiVersion(version) if version is not None else self.dispatcher.version
        strategy = get_strategy(api_version)

        outcomes: dict[str, ResultEnvelope] = {}
        known: dict[str, Any] = {}
        failed: set[str] = set()
        last_time = None
        chunks = [entries[i : i + self.max_batch_commands] for i in range(0, len(entries), self.max_batch_commands)]

        for chunk_no, chunk in enumerate(chunks, start=1):
            ctx = _ChunkContext(known=known, failed=failed, chunk_keys={key for key, _ in chunk}, named=named)
            prepared: list[tuple[str | int, str, Command]] = []

            for key, command in chunk:
                try:
                    params = resolve_references(command.params, ctx)
                except _Unresolved as e:
                    failed.add(key)
                    outcomes[key] = ResultEnvelope.fail(
                        [ErrorMessage(code=UNRESOLVED_REFERENCE, message=str(e), key=key)],
                        status=0,
                        method=command.method,
                        params=command.params,
                    )
                    continue
                wire_key: str | int = key if named else len(prepared)
                ctx.local_index[key] = len(prepared)
                prepared.append((wire_key, key, Command(method=command.method, params=params)))

            chunk_failed = len(prepared) < len(chunk)
            if prepared:
                body = strategy.build_batch_body(
                    [(wire_key, command) for wire_key, _, command in prepared],
                    named=named,
                    halt=is_halt_on_error,
                )
                envelope = await self.dispatcher.call_raw(
                    "batch",
                    body,
                    version=api_version,
                    timeout=timeout,
                    cancel_event=cancel_event,
                )
                last_time = envelope.time or last_time
                chunk_failed = await self._collect(envelope, prepared, strategy, outcomes, known, failed) or chunk_failed

                log_event(
                    logger,
                    event="batch_chunk_sent",
                    level="debug",
                    chunk=f"{chunk_no}/{len(chunks)}",
                    commands=len(prepared),
                    request_id=envelope.request_id,
                    failed=chunk_failed,
                )

            if is_halt_on_error and chunk_failed:
                if chunk_no < len(chunks):
                    log_event(
                        logger,
                        event="batch_halted",
                        level="warning",
                        chunk=f"{chunk_no}/{len(chunks)}",
                        skipped_chunks=len(chunks) - chunk_no,
                    )
                break

        return self._aggregate(entries, outcomes, named, return_ajax_result, last_time)

    async def call_batch_by_chunk(
        self,
        commands: Sequence[Any],
        is_halt_on_error: bool = False,
        *,
        version: ApiVersion | str | None = None,
        timeout: float | None = None,
    ) -> ResultEnvelope:
        """Positional batch of any length; ``data`` is the list of successful results in input order."""
        envelope = await self.call_batch(
            list(commands),
            is_halt_on_error=is_halt_on_error,
            return_ajax_result=True,
            version=version,
            timeout=timeout,
        )
        rows = [item.data for item in envelope.data if item.is_success]
        return replace(envelope, data=rows)

    def _validate_references(self, entries: list[tuple[str, Command]]) -> None:
        seen: set[str] = set()
        keys = {key for key, _ in entries}
        for key, command in entries:
            for target in find_references(command.params):
                if target in seen:
                    continue
                reason = "forward reference" if target in keys else "unknown command"
                raise ConfigurationError(
                    error_code="INVALID_BATCH_REFERENCE",
                    message=f"Command {key!r} references $result[{target}]: {reason}",
                    context={"command": key, "method": command.method, "target": target},
                )
            seen.add(key)

    async def _collect(
        self,
        envelope: ResultEnvelope,
        prepared: list[tuple[str | int, str, Command]],
        strategy: Any,
        outcomes: dict[str, ResultEnvelope],
        known: dict[str, Any],
        failed: set[str],
    ) -> bool:
        """Split one physical answer into per-command envelopes. Returns True if any failed."""
        any_failed = False
        limiter = self.dispatcher.limiter
        fetcher = self.dispatcher.next_fetcher(strategy.version)

        for wire_key, key, command in prepared:
            common = {
                "status": envelope.status,
                "method": command.method,
                "params": command.params,
                "request_id": envelope.request_id,
            }
            if not envelope.is_success:
                outcome = ResultEnvelope.fail(
                    [replace(error, key=key) for error in envelope.errors], time=envelope.time, **common
                )
            else:
                item = strategy.read_batch_item(envelope.data, wire_key, envelope.time)
                if not item.present:
                    outcome = ResultEnvelope.fail(
                        [ErrorMessage(code=NOT_EXECUTED, message="no result returned for command", key=key)],
                        time=envelope.time,
                        **common,
                    )
                elif item.errors:
                    outcome = ResultEnvelope.fail(
                        [replace(error, key=key) for error in item.errors], time=item.time, **common
                    )
                else:
                    outcome = ResultEnvelope.ok(
                        item.data, time=item.time, total=item.total, next=item.next, **common
                    ).with_fetcher(fetcher)
                    if item.time is not None and item.time is not envelope.time:
                        await limiter.update_stats(f"{BATCH_PREFIX}{command.method}", item.time)

            outcomes[key] = outcome
            if outcome.is_success:
                known[key] = outcome.data
            else:
                failed.add(key)
                any_failed = True
        return any_failed

    @staticmethod
    def _aggregate(
        entries: list[tuple[str, Command]],
        outcomes: dict[str, ResultEnvelope],
        named: bool,
        return_ajax_result: bool,
        time: Any,
    ) -> ResultEnvelope:
        named_data: dict[str, Any] = {}
        rows: list[Any] = []
        errors: list[ErrorMessage] = []
        for key, _ in entries:
            outcome = outcomes.get(key)
            if outcome is None:
                continue
            errors.extend(outcome.errors)
            if not return_ajax_result and not outcome.is_success:
                continue
            value = outcome if return_ajax_result else outcome.data
            if named:
                named_data[key] = value
            else:
                rows.append(value)

        data = named_data if named else rows

        status = 200 if not errors else max((o.status for o in outcomes.values()), default=200)
        return ResultEnvelope(data=data, errors=tuple(errors), time=time, status=status or 200, method="batch")
