from __future__ import annotations

from typing import List


class AccumulatorFrozen(RuntimeError):
    pass


class ResponseAccumulator:
    """Growing text of one streamed turn.

    Some payload shapes repeat the full text so far on every frame. A
    candidate that extends the current text only contributes its new
    suffix; anything else is appended whole.
    """

    def __init__(self) -> None:
        self._text = ""
        self._emitted: List[str] = []
        self._frozen = False

    @property
    def text(self) -> str:
        return self._text

    @property
    def emitted(self) -> List[str]:
        return list(self._emitted)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def reset(self) -> None:
        self._text = ""
        self._emitted = []
        self._frozen = False

    def freeze(self) -> str:
        self._frozen = True
        return self._text

    def append_delta(self, delta: str) -> str:
        """Append a true increment. Returns the emitted delta ("" for none)."""
        if self._frozen:
            raise AccumulatorFrozen("turn already completed")
        if not delta:
            return ""
        self._text += delta
        self._emitted.append(delta)
        return delta

    def apply_candidate(self, candidate: str) -> str:
        """Reconcile a full-text candidate and append the true delta."""
        if candidate.startswith(self._text):
            return self.append_delta(candidate[len(self._text):])
        return self.append_delta(candidate)
