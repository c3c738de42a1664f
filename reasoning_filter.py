from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

from utils import THINK_CLOSE, THINK_OPEN, get_path

OPEN_MARKER = THINK_OPEN + "\n"
CLOSE_MARKER = "\n" + THINK_CLOSE
SEPARATOR = "\n\n"

_ENVELOPE_KEYS = ("id", "object", "created", "model")


@dataclass
class ReasoningState:
    in_reasoning: bool = False
    reasoning_started: bool = False


class BaseReasoningFilter(ABC):
    @abstractmethod
    def stream(self, event: dict) -> dict:
        """Rewrite one parsed stream frame"""
        pass

    @abstractmethod
    def close(self) -> Optional[dict]:
        """Frame to emit before the stream terminates, if any"""
        pass


class ReasoningFilter(BaseReasoningFilter):
    """
    Converts streaming 'reasoning_content' deltas into content wrapped in <think>...</think> tags.
    Holds the state of a single response stream; create one per request.
    """

    def __init__(self):
        self.state = ReasoningState()
        # Envelope of the last frame, reused for the synthetic closing frame
        self._envelope: Dict[str, Any] = {}

    def stream(self, event: dict) -> dict:
        self._envelope = {k: event[k] for k in _ENVELOPE_KEYS if k in event}

        choice = get_path(event, "choices", 0)
        delta = get_path(choice, "delta")
        if not isinstance(delta, dict):
            return event

        reasoning = delta.get("reasoning_content")
        content = delta.get("content")
        finish_reason = choice.get("finish_reason")

        if isinstance(reasoning, str) and reasoning:
            if not self.state.reasoning_started:
                self.state.reasoning_started = True
                self.state.in_reasoning = True
                delta["content"] = OPEN_MARKER + reasoning
            else:
                delta["content"] = reasoning
        elif self.state.in_reasoning and (content or finish_reason is not None):
            delta["content"] = CLOSE_MARKER + SEPARATOR + (content or "")
            self.state.in_reasoning = False

        # Remove the original reasoning field to avoid leaking it
        delta.pop("reasoning_content", None)
        if "content" in delta and delta["content"] is None:
            delta["content"] = ""

        return event

    def close(self) -> Optional[dict]:
        """Closing frame for a stream that ended while still inside the reasoning block"""
        if not self.state.in_reasoning:
            return None
        self.state.in_reasoning = False
        return {
            **self._envelope,
            "choices": [{
                "index": 0,
                "delta": {"content": CLOSE_MARKER},
                "finish_reason": None
            }]
        }


class ClearReasoningFilter(BaseReasoningFilter):
    """Blanks reasoning_content in every choice instead of moving it into content."""

    def stream(self, event: dict) -> dict:
        choices = event.get("choices")
        if not isinstance(choices, list):
            return event
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            # Check both delta (stream) and message (non-stream)
            for key in ("delta", "message"):
                part = choice.get(key)
                if isinstance(part, dict) and "reasoning_content" in part:
                    part["reasoning_content"] = ""
        return event

    def close(self) -> Optional[dict]:
        return None


_registry: Dict[str, Type[BaseReasoningFilter]] = {
    "inline": ReasoningFilter,
    "clear": ClearReasoningFilter,
}


def build_reasoning_filter(mode: str) -> BaseReasoningFilter:
    filter_class = _registry.get(mode.lower())
    if not filter_class:
        raise ValueError(f"Invalid reasoning mode: {mode}")
    return filter_class()
