"""Reconciliation engine: one shared conversation map fed by three producers.

The refresh channel, the push channel and the authoritative snapshot all end
up in :meth:`ReconciliationEngine.ingest`, which merges, overlays the
snapshot and evaluates new inbound messages against the routing/lifecycle
transitions. Effects returned by those transitions (sends and store writes)
are executed here, and only here.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from ..config import SyncSettings
from ..conversations.models import (
    Conversation,
    Message,
    MessageStatus,
    Sender,
    utcnow,
)
from ..conversations.records import conversation_from_record, conversation_to_record
from ..errors import ConversationNotFoundError, DepartmentNotFoundError, PayloadError
from ..providers import evolution
from ..providers.base import ProviderClient, PushConnector, RecordStore
from ..reconciliation.identity import local_id_of, provider_id_of
from ..reconciliation.merge import merge_messages, new_messages, without_suppressed
from ..reconciliation.snapshot import SnapshotLoader, apply_snapshot
from ..routing import lifecycle
from ..routing.departments import DepartmentDirectory
from ..routing.machine import RoutingContext, on_prompt_result, route_agent_send
from ..routing.states import (
    SendConfirmation,
    SendSelectionPrompt,
    SendText,
    Transition,
    WriteRecord,
    WriteStatus,
)
from .push import PushChannelManager, PushState
from .refresh import RefreshChannel

logger = logging.getLogger(__name__)

Listener = Callable[[Conversation], None]


def agent_header(agent_name: str, department_name: str | None = None) -> str:
    """Signature prepended to agent messages, e.g. ``*Ana - Sales*:``."""

    label = f"{agent_name} - {department_name}" if department_name else agent_name
    return f"*{label}*:\n"


class ReconciliationEngine:
    """Keeps the in-memory inbox consistent with the store and the provider."""

    def __init__(
        self,
        store: RecordStore,
        provider: ProviderClient,
        *,
        settings: SyncSettings | None = None,
        connector: PushConnector | None = None,
        clock: Callable[[], datetime] = utcnow,
        parse_push_message: Callable[[Mapping[str, Any]], Message] = (
            evolution.message_from_provider
        ),
    ) -> None:
        self.settings = settings or SyncSettings()
        self.store = store
        self.provider = provider
        self.conversations: dict[str, Conversation] = {}
        self.snapshots = SnapshotLoader(store, self.settings.chat_record_type)
        self.directory = DepartmentDirectory(
            store,
            department_record_type=self.settings.department_record_type,
            agent_record_type=self.settings.agent_record_type,
            ttl=self.settings.department_cache_ttl,
        )
        self.refresh = RefreshChannel(
            self.refresh_cycle,
            fast_interval=self.settings.fast_refresh_interval,
            slow_interval=self.settings.slow_refresh_interval,
        )
        self.push = PushChannelManager(
            connector,
            on_batch=self.handle_push_batch,
            on_status=self.apply_status_update,
            conversation_key=evolution.remote_jid_of,
            instance=self.settings.provider_instance,
            credential=self.settings.provider_api_key,
            on_state_change=self._on_push_state,
            max_attempts=self.settings.push_max_attempts,
            backoff_base=self.settings.push_backoff_base,
            backoff_cap=self.settings.push_backoff_cap,
            debounce=self.settings.batch_debounce,
            max_wait=self.settings.batch_max_wait,
        )
        self._clock = clock
        self._parse_push_message = parse_push_message
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[Listener] = []
        self.primed = False
        self.started = False

    # ------------------------------------------------------------------
    # Lifecycle

    async def prime(self) -> None:
        """Run the initial sync; history seen here is never routed."""

        await self.refresh.tick()

    async def start(self) -> None:
        if self.started:
            return
        self.started = True
        await self.prime()
        self.refresh.start()
        await self.push.start()

    async def stop(self) -> None:
        self.started = False
        await self.refresh.stop()
        await self.push.stop()

    async def reconnect(self) -> bool:
        return await self.push.reconnect()

    def _on_push_state(self, state: str) -> None:
        self.refresh.set_push_connected(state == PushState.CONNECTED)

    # ------------------------------------------------------------------
    # Observers

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, conversation: Conversation) -> None:
        self.conversations[conversation.id] = conversation
        for listener in list(self._listeners):
            try:
                listener(conversation)
            except Exception:
                logger.exception("Conversation listener failed for %s", conversation.id)

    def get(self, conversation_id: str) -> Conversation:
        try:
            return self.conversations[conversation_id]
        except KeyError:
            raise ConversationNotFoundError(conversation_id) from None

    def list_conversations(self) -> list[Conversation]:
        return sorted(
            self.conversations.values(),
            key=lambda c: c.last_message_time.timestamp() if c.last_message_time else 0.0,
            reverse=True,
        )

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Producers

    async def refresh_cycle(self) -> None:
        snapshot = await self.snapshots.load()
        summaries = await self.provider.list_conversations()
        evaluate = self.primed
        seen: set[str] = set()
        for summary in summaries:
            try:
                messages = await self.provider.list_messages(
                    summary.id, self.settings.message_fetch_limit
                )
            except Exception as exc:
                logger.warning("Fetching messages for %s failed: %s", summary.id, exc)
                continue
            seen.add(summary.id)
            await self._ingest_guarded(summary.id, messages, summary=summary, evaluate=evaluate)

        for conversation_id in list(snapshot):
            if conversation_id in seen:
                continue
            await self._ingest_guarded(conversation_id, (), evaluate=False)
        self.primed = True

    async def _ingest_guarded(self, conversation_id: str, messages, **options) -> None:
        try:
            await self.ingest(conversation_id, messages, **options)
        except Exception:
            logger.exception("Reconciling %s failed, skipping it this cycle", conversation_id)

    async def handle_push_batch(self, conversation_id: str, items: list[dict[str, Any]]) -> None:
        messages: list[Message] = []
        summary: Conversation | None = None
        for item in items:
            try:
                messages.append(self._parse_push_message(item))
            except PayloadError as exc:
                logger.warning("Skipping malformed push message for %s: %s", conversation_id, exc)
                continue
            summary = evolution.summary_from_event(item) or summary
        if messages:
            await self.ingest(conversation_id, messages, summary=summary)

    async def apply_status_update(self, item: Mapping[str, Any]) -> bool:
        """Advance the delivery status of a known message; never creates one."""

        conversation_id, provider_id, status = evolution.status_update_of(item)
        candidates = (
            [conversation_id] if conversation_id in self.conversations else list(self.conversations)
        )
        for cid in candidates:
            async with self._lock(cid):
                conversation = self.conversations.get(cid)
                if conversation is None:
                    continue
                updated = _with_status(conversation.messages, provider_id, status)
                if updated is None:
                    continue
                if updated is not conversation.messages:
                    self._commit(conversation.evolve(messages=updated))
                return True
        return False

    async def ingest(
        self,
        conversation_id: str,
        incoming: Iterable[Message],
        *,
        summary: Conversation | None = None,
        evaluate: bool = True,
    ) -> Conversation:
        """Merge ``incoming`` into the conversation and react to new inbound messages."""

        async with self._lock(conversation_id):
            current = self.conversations.get(conversation_id) or self._seed(conversation_id)
            if summary is not None:
                current = _with_contact(current, summary)
            before = current.messages
            merged = merge_messages(before, without_suppressed(incoming, current.suppressed))
            conversation = apply_snapshot(current.evolve(messages=merged), self.snapshots.current)
            self._commit(conversation)
            if not evaluate:
                return conversation

            now = self._clock()
            fresh = [
                m
                for m in new_messages(before, merged)
                if m.sender == Sender.USER
                and (now - m.timestamp).total_seconds() <= self.settings.inbound_max_age_seconds
            ]
            if not fresh:
                return conversation
            context = await self._routing_context(now)
            for message in fresh:
                transition = lifecycle.evaluate_inbound(conversation, message, context)
                self._commit(transition.conversation)
                conversation = await self._execute(transition)
            return conversation

    def _seed(self, conversation_id: str) -> Conversation:
        document = self.snapshots.current.document(conversation_id)
        if document is not None:
            try:
                return conversation_from_record(conversation_id, document)
            except (PayloadError, TypeError, ValueError) as exc:
                logger.warning("Stored record for %s is unreadable: %s", conversation_id, exc)
        return Conversation(id=conversation_id)

    async def _routing_context(self, now: datetime) -> RoutingContext:
        return RoutingContext(
            departments=tuple(await self.directory.departments()),
            agents=tuple(await self.directory.agents()),
            now=now,
            confirmation_template=self.settings.confirmation_template,
            lookback_messages=self.settings.prompt_lookback_messages,
            lookback_seconds=self.settings.prompt_lookback_seconds,
        )

    # ------------------------------------------------------------------
    # Effects

    async def _execute(self, transition: Transition) -> Conversation:
        conversation = transition.conversation
        for effect in transition.effects:
            if isinstance(effect, SendSelectionPrompt):
                sent = await self._send(
                    self.provider.send_selection_prompt(
                        effect.contact_address, effect.departments
                    ),
                    effect.conversation_id,
                )
                result = on_prompt_result(
                    conversation, bool(sent), self._clock(), reopen=effect.reopen
                )
                self._commit(result.conversation)
                conversation = await self._execute(result)
            elif isinstance(effect, SendConfirmation):
                await self._send(
                    self.provider.send_confirmation(
                        effect.contact_address, effect.department_name, effect.template
                    ),
                    effect.conversation_id,
                )
            elif isinstance(effect, SendText):
                await self._send(
                    self.provider.send_text(effect.contact_address, effect.text),
                    effect.conversation_id,
                )
            elif isinstance(effect, WriteStatus):
                fields = dataclasses.asdict(effect)
                await self._write(self.store.write_status(**fields), conversation)
            elif isinstance(effect, WriteRecord):
                await self._write(
                    self.store.write_full_record(
                        effect.conversation_id, conversation_to_record(conversation)
                    ),
                    conversation,
                )
        return conversation

    async def _send(self, call: Awaitable[Any], conversation_id: str) -> Any:
        try:
            return await call
        except Exception as exc:
            logger.warning("Send to %s failed: %s", conversation_id, exc)
            return None

    async def _write(self, call: Awaitable[bool], conversation: Conversation) -> bool:
        try:
            ok = await call
        except Exception as exc:
            logger.warning(
                "Store write for %s failed, keeping in-memory state: %s", conversation.id, exc
            )
            return False
        if not ok:
            logger.warning("Store rejected write for %s", conversation.id)
            return False
        self.snapshots.record_write(conversation)
        return True

    # ------------------------------------------------------------------
    # Agent actions

    async def _act(
        self, conversation_id: str, build: Callable[[Conversation], Transition]
    ) -> Conversation:
        async with self._lock(conversation_id):
            transition = build(self.get(conversation_id))
            self._commit(transition.conversation)
            return await self._execute(transition)

    async def close(self, conversation_id: str, *, with_survey: bool = False) -> Conversation:
        return await self._act(
            conversation_id,
            lambda c: lifecycle.close(
                c,
                self._clock(),
                with_survey=with_survey,
                survey_text=self.settings.survey_text,
            ),
        )

    async def transfer(self, conversation_id: str, department_id: str) -> Conversation:
        self.get(conversation_id)
        department = await self.directory.get(department_id)
        if department is None:
            raise DepartmentNotFoundError(department_id)
        return await self._act(
            conversation_id, lambda c: lifecycle.transfer(c, department, self._clock())
        )

    async def assign(self, conversation_id: str, agent_id: str) -> Conversation:
        return await self._act(conversation_id, lambda c: lifecycle.assign(c, agent_id))

    async def set_pending(self, conversation_id: str) -> Conversation:
        return await self._act(conversation_id, lifecycle.set_pending)

    async def send_agent_message(
        self,
        conversation_id: str,
        text: str,
        *,
        agent_name: str,
        department_name: str | None = None,
    ) -> Message:
        """Insert the message optimistically, send it, then patch in the provider id."""

        local = Message(
            id=f"local_{uuid.uuid4().hex}",
            sender=Sender.AGENT,
            content=text,
            timestamp=self._clock(),
            status=MessageStatus.SENT,
            author=agent_name,
        )
        async with self._lock(conversation_id):
            conversation = self.get(conversation_id)
            merged = merge_messages(conversation.messages, [local])
            self._commit(conversation.evolve(messages=merged))

        provider_id = await self._send(
            self.provider.send_text(
                conversation.contact_address, agent_header(agent_name, department_name) + text
            ),
            conversation_id,
        )

        async with self._lock(conversation_id):
            conversation = self.get(conversation_id)
            if provider_id is None:
                outcome = dataclasses.replace(local, status=MessageStatus.ERROR)
                messages = [outcome if m.id == local.id else m for m in conversation.messages]
            else:
                outcome = dataclasses.replace(local, provider_message_id=provider_id or None)
                remaining = [m for m in conversation.messages if m.id != local.id]
                messages = merge_messages(remaining, [outcome])
            updated = conversation.evolve(messages=messages)
            self._commit(updated)
            if provider_id is not None:
                updated = await self._execute(Transition(updated, (WriteRecord(conversation_id),)))
                context = await self._routing_context(self._clock())
                transition = route_agent_send(updated, context)
                if transition.effects:
                    self._commit(transition.conversation)
                    await self._execute(transition)
        return outcome

    # ------------------------------------------------------------------
    # Health

    def status(self) -> dict[str, Any]:
        snapshot = self.snapshots.current
        return {
            "push_state": self.push.state,
            "push_attempts": self.push.attempts,
            "push_last_error": self.push.last_error,
            "push_configured": self.push.can_connect,
            "refresh_interval": self.refresh.interval,
            "refresh_in_flight": self.refresh.in_flight,
            "refresh_cycles": self.refresh.cycles_run,
            "refresh_failures": self.refresh.cycles_failed,
            "conversations": len(self.conversations),
            "snapshot_records": len(snapshot),
            "snapshot_loaded_at": snapshot.loaded_at,
            "primed": self.primed,
        }


def _with_contact(conversation: Conversation, summary: Conversation) -> Conversation:
    changes: dict[str, Any] = {}
    for name in ("contact_name", "contact_number", "contact_avatar"):
        value = getattr(summary, name)
        if value and value != getattr(conversation, name):
            changes[name] = value
    if summary.unread_count and summary.unread_count != conversation.unread_count:
        changes["unread_count"] = summary.unread_count
    return dataclasses.replace(conversation, **changes) if changes else conversation


def _with_status(messages: list[Message], provider_id: str, status: str) -> list[Message] | None:
    """``None`` when no message matches; the same list when nothing changes."""

    for index, message in enumerate(messages):
        if provider_id not in (provider_id_of(message), local_id_of(message)):
            continue
        if MessageStatus.RANK.get(status, 1) <= MessageStatus.RANK.get(message.status, 1):
            return messages
        updated = list(messages)
        updated[index] = dataclasses.replace(message, status=status)
        return updated
    return None
