"""
Message reconciliation.

Merges the persisted message log with the message a live stream session is
still building, so that the display list is ordered, duplicate free and
stable between updates.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence

from ..schemas.message import ChatMessage


logger = logging.getLogger(__name__)


class MessageReconciler:
    """Produces the render-ready message list for one thread.

    Keep one instance per thread view: it remembers the last list it returned
    (handed back unchanged when nothing visible changed) and the provisional
    to permanent id rewrites it has already made.
    """

    def __init__(self):
        self._aliases: Dict[str, str] = {}
        self._last: Optional[List[ChatMessage]] = None

    @property
    def aliases(self) -> Mapping[str, str]:
        return dict(self._aliases)

    def resolve_id(self, message_id: str) -> str:
        return self._aliases.get(message_id, message_id)

    def reconcile(
        self,
        persisted: Sequence[ChatMessage],
        live: Optional[ChatMessage] = None,
        history: Sequence[ChatMessage] = (),
    ) -> List[ChatMessage]:
        """Merge ``history`` (an older page), ``persisted`` and ``live``.

        Persisted order is authoritative. The live message either overlays the
        persisted message that is still marked streaming for the same turn,
        or is appended as the single trailing entry.
        """
        merged = self._merge_base(history, persisted)
        if live is not None:
            merged = self._apply_live(merged, live)

        if self._last is not None and self._last == merged:
            return self._last
        self._last = merged
        return merged

    def reset(self) -> None:
        self._last = None

    def _merge_base(
        self, history: Sequence[ChatMessage], persisted: Sequence[ChatMessage]
    ) -> List[ChatMessage]:
        order: List[str] = []
        by_id: Dict[str, ChatMessage] = {}

        persisted_ids = {self.resolve_id(m.id) for m in persisted}

        for message in history:
            message_id = self.resolve_id(message.id)
            if message_id in persisted_ids or message_id in by_id:
                continue
            order.append(message_id)
            by_id[message_id] = self._with_id(message, message_id)

        for message in persisted:
            message_id = self.resolve_id(message.id)
            if message_id not in by_id:
                order.append(message_id)
            # a repeated id keeps its first position and its latest content
            by_id[message_id] = self._with_id(message, message_id)

        return [by_id[message_id] for message_id in order]

    def _apply_live(self, merged: List[ChatMessage], live: ChatMessage) -> List[ChatMessage]:
        live_id = self.resolve_id(live.id)

        if live.stream_id:
            for message in merged:
                if message.stream_id == live.stream_id and message.id != live_id:
                    self._record_alias(live.id, message.id)
                    live_id = message.id
                    break

        for index, message in enumerate(merged):
            if message.id != live_id:
                continue
            if not message.is_streaming:
                # the turn has been flushed; the frozen persisted copy wins
                return merged
            merged[index] = live.model_copy(update={
                "id": live_id,
                "attachments": live.attachments or message.attachments,
                "model_id": live.model_id or message.model_id,
            })
            return merged

        merged.append(self._with_id(live, live_id))
        return merged

    def _record_alias(self, provisional: str, permanent: str) -> None:
        if provisional == permanent or provisional in self._aliases:
            return
        logger.debug("Rewriting message id %s -> %s", provisional, permanent)
        self._aliases[provisional] = permanent

    @staticmethod
    def _with_id(message: ChatMessage, message_id: str) -> ChatMessage:
        if message.id == message_id:
            return message
        return message.model_copy(update={"id": message_id})
