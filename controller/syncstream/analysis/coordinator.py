"""Single question/answer exchange against a snapshot."""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..capture.frame import Snapshot
from .gemini import ScreenAnalyzer

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "Could not analyze the screen right now; try again."


class ExchangeState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_QUESTION = "awaiting_question"
    ANALYZING = "analyzing"
    ANSWERED = "answered"


@dataclass
class QAInteraction:
    question: str
    answer: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class AIQueryCoordinator:
    """Owns the snapshot and at most one in-flight or last-completed interaction.

    Exactly one analyzer call may be in flight. Results are applied only if
    the exchange that requested them is still open.
    """

    def __init__(
        self,
        analyzer: ScreenAnalyzer,
        *,
        on_change: Optional[Callable[["AIQueryCoordinator"], None]] = None,
    ) -> None:
        self._analyzer = analyzer
        self._on_change = on_change
        self._state = ExchangeState.IDLE
        self._snapshot: Optional[Snapshot] = None
        self._interaction: Optional[QAInteraction] = None
        self._generation = 0
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> ExchangeState:
        return self._state

    @property
    def snapshot(self) -> Optional[Snapshot]:
        return self._snapshot

    @property
    def interaction(self) -> Optional[QAInteraction]:
        return self._interaction

    def open(self, snapshot: Snapshot) -> bool:
        if self._state not in {ExchangeState.IDLE, ExchangeState.ANSWERED}:
            logger.debug("Ignoring open while %s", self._state.value)
            return False
        self._generation += 1
        self._snapshot = snapshot
        self._interaction = None
        self._set_state(ExchangeState.AWAITING_QUESTION)
        return True

    def ask(self, question: str) -> bool:
        question = (question or "").strip()
        if self._state is not ExchangeState.AWAITING_QUESTION or not question or self._snapshot is None:
            logger.debug("Ignoring ask while %s", self._state.value)
            return False
        self._interaction = QAInteraction(question=question)
        self._set_state(ExchangeState.ANALYZING)
        self._task = asyncio.create_task(
            self._run_exchange(self._generation, self._snapshot, question), name="ai-exchange"
        )
        return True

    def reset(self) -> bool:
        """Drop the answer and wait for a follow-up question on the same snapshot."""

        if self._state is not ExchangeState.ANSWERED:
            return False
        self._interaction = None
        self._set_state(ExchangeState.AWAITING_QUESTION)
        return True

    def close(self) -> None:
        self._generation += 1
        if self._task and not self._task.done():
            self._task.cancel()
        self._snapshot = None
        self._interaction = None
        if self._state is not ExchangeState.IDLE:
            self._set_state(ExchangeState.IDLE)

    async def wait(self) -> None:
        """Wait for the in-flight analyzer call, if any, to settle."""

        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # a cancelled exchange is settled; only our own cancellation propagates
            if not task.cancelled():
                raise

    def view(self, *, include_snapshot: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "state": self._state.value,
            "question": self._interaction.question if self._interaction else None,
            "answer": self._interaction.answer if self._interaction else None,
            "timestamp": self._interaction.timestamp if self._interaction else None,
            "snapshot": None,
        }
        if self._snapshot is not None:
            snapshot: Dict[str, Any] = {
                "width": self._snapshot.width,
                "height": self._snapshot.height,
                "captured_at": self._snapshot.captured_at,
            }
            if include_snapshot:
                snapshot["payload"] = self._snapshot.payload
            data["snapshot"] = snapshot
        return data

    async def _run_exchange(self, generation: int, snapshot: Snapshot, question: str) -> None:
        try:
            answer = await self._analyzer.analyze(snapshot.payload, question)
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancel
            raise
        except Exception as exc:
            logger.warning("Screen analysis failed: %s", exc)
            answer = FALLBACK_ANSWER

        if generation != self._generation or self._state is not ExchangeState.ANALYZING:
            logger.info("Discarding analysis result for a closed exchange")
            return
        assert self._interaction is not None
        self._interaction.answer = answer
        self._interaction.timestamp = time.time()
        self._set_state(ExchangeState.ANSWERED)

    def _set_state(self, state: ExchangeState) -> None:
        self._state = state
        if self._on_change is not None:
            self._on_change(self)


__all__ = ["AIQueryCoordinator", "ExchangeState", "QAInteraction", "FALLBACK_ANSWER"]
