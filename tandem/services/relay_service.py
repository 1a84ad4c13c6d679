"""
Tandem — Signaling & Chat Relay

Forwards negotiation messages and chat text from a bound connection to
exactly its current partner.  Negotiation payloads are opaque and passed on
unmodified; chat text is truncated and trimmed.  Anything sent while not
bound is dropped without an error: the sender may have been unbound a moment
earlier, which is expected.
"""

from __future__ import annotations

from typing import Any, Callable

import structlog

from tandem.services.events import CHAT_MESSAGE, PARTNER_TYPING, Outbound
from tandem.services.pairing_service import PairingCoordinator

logger = structlog.get_logger("tandem.relay_service")

NEGOTIATION_OFFER = "negotiation-offer"
NEGOTIATION_ANSWER = "negotiation-answer"
NEGOTIATION_CANDIDATE = "negotiation-candidate"

NEGOTIATION_EVENTS: tuple[str, ...] = (
    NEGOTIATION_OFFER,
    NEGOTIATION_ANSWER,
    NEGOTIATION_CANDIDATE,
)


def sanitize_chat_text(raw: Any, max_length: int) -> str:
    """Stringify, cut to ``max_length`` and strip surrounding whitespace."""
    if raw is None:
        return ""
    return str(raw)[:max_length].strip()


class RelayService:
    def __init__(
        self,
        pairing: PairingCoordinator,
        clock: Callable[[], float],
        chat_max_length: int = 500,
    ) -> None:
        self.pairing = pairing
        self._clock = clock
        self.chat_max_length = chat_max_length

    def relay(self, from_id: str, event: str, payload: Any) -> list[Outbound]:
        """Forward ``payload`` as ``event`` to the sender's partner."""
        partner = self.pairing.partner_of(from_id)
        if partner is None:
            logger.debug("relay_dropped", connection_id=from_id, relay_event=event, reason="not_bound")
            return []
        return [Outbound(event, payload, to=partner.id)]

    def relay_negotiation(self, from_id: str, kind: str, payload: Any) -> list[Outbound]:
        if kind not in NEGOTIATION_EVENTS:
            logger.debug("relay_dropped", connection_id=from_id, relay_event=kind, reason="unknown_kind")
            return []
        return self.relay(from_id, kind, payload)

    def relay_chat(self, from_id: str, data: Any) -> list[Outbound]:
        text = sanitize_chat_text(
            data.get("text") if isinstance(data, dict) else None,
            self.chat_max_length,
        )
        if not text:
            logger.debug("relay_dropped", connection_id=from_id, relay_event=CHAT_MESSAGE, reason="empty")
            return []

        sender = self.pairing.sessions.get(from_id)
        if sender is None:
            return []

        return self.relay(
            from_id,
            CHAT_MESSAGE,
            {
                "text": text,
                "from": sender.profile.display_name,
                "timestamp": int(self._clock() * 1000),
            },
        )

    def relay_typing(self, from_id: str) -> list[Outbound]:
        return self.relay(from_id, PARTNER_TYPING, None)
