# FILE: widelog/sampling.py
from __future__ import annotations

import copy
import logging
import random
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Union

from .config import KeepRule, SamplingConfig
from .metrics import WidelogMetrics
from .utils import finite_float, matches_pattern

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Keep-override hook
# ---------------------------------------------------------------------------


@dataclass
class KeepDecision:
    """
    Mutable context handed to the keep-override hook.

    The hook may set `keep = True` to rescue an event. Setting it to False
    on an event sampling already kept has no effect.
    """

    event: Mapping[str, Any]
    keep: bool
    status: Optional[int] = None
    duration: Optional[float] = None
    path: Optional[str] = None
    method: Optional[str] = None


class KeepOverride(Protocol):
    def should_keep(self, decision: KeepDecision) -> None:
        ...


KeepOverrideLike = Union[KeepOverride, Callable[[KeepDecision], Any]]


class _CallableOverride:
    def __init__(self, fn: Callable[[KeepDecision], Any]) -> None:
        self._fn = fn

    def should_keep(self, decision: KeepDecision) -> None:
        self._fn(decision)


def as_keep_override(hook: Optional[KeepOverrideLike]) -> Optional[KeepOverride]:
    if hook is None:
        return None
    if hasattr(hook, "should_keep"):
        return hook  # type: ignore[return-value]
    if callable(hook):
        return _CallableOverride(hook)
    raise TypeError("keep override must be callable or implement should_keep()")


# ---------------------------------------------------------------------------
# Tail rules
# ---------------------------------------------------------------------------


def rule_matches(rule: KeepRule, event: Mapping[str, Any]) -> bool:
    """
    True when every field set on `rule` matches the event.

    Missing or non-numeric event fields are a non-match, never an error.
    """
    try:
        if rule.status is not None:
            status = event.get("status")
            if isinstance(status, bool) or not isinstance(status, int) or status != rule.status:
                return False
        if rule.duration is not None:
            duration = finite_float(event.get("duration"))
            if duration is None or duration < rule.duration:
                return False
        if rule.path:
            if not matches_pattern(event.get("path"), rule.path):
                return False
        return True
    except Exception:
        _log.warning("keep rule evaluation failed; treating as no match", exc_info=True)
        return False


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SamplingResult:
    keep: bool
    # "head", "tail:<index>", "override" or "dropped"
    reason: str


class SamplingEngine:
    """
    Head + tail sampling with an optional keep-only override hook.

    1. Head: keep with probability rate/100 for the event's level
       (no configured rate keeps everything).
    2. Tail: if head dropped, any matching keep rule keeps the event; the
       first matching rule is reported as the reason.
    3. Override: the hook sees the decision and may only turn it into keep.
    """

    def __init__(
        self,
        config: Optional[SamplingConfig] = None,
        *,
        override: Optional[KeepOverrideLike] = None,
        rng: Optional[random.Random] = None,
        metrics: Optional[WidelogMetrics] = None,
    ) -> None:
        self.config = config or SamplingConfig()
        self.override = as_keep_override(override)
        self._rng = rng or random.Random()
        self._metrics = metrics

    def head_keep(self, level: str) -> bool:
        rate = self.config.rate_for(level)
        if rate >= 100.0:
            return True
        if rate <= 0.0:
            return False
        return self._rng.random() * 100.0 < rate

    def tail_match(self, event: Mapping[str, Any]) -> Optional[int]:
        for idx, rule in enumerate(self.config.keep):
            if rule_matches(rule, event):
                return idx
        return None

    def decide(self, event: Mapping[str, Any]) -> SamplingResult:
        level = str(event.get("level") or "info")

        if self.head_keep(level):
            keep, reason = True, "head"
        else:
            idx = self.tail_match(event)
            if idx is not None:
                keep, reason = True, f"tail:{idx}"
            else:
                keep, reason = False, "dropped"

        if self.override is None:
            return SamplingResult(keep, reason)

        status = event.get("status")
        decision = KeepDecision(
            event=MappingProxyType(copy.deepcopy(dict(event))),
            keep=keep,
            status=status if isinstance(status, int) else None,
            duration=finite_float(event.get("duration")),
            path=event.get("path") if isinstance(event.get("path"), str) else None,
            method=event.get("method") if isinstance(event.get("method"), str) else None,
        )
        try:
            self.override.should_keep(decision)
        except Exception:
            _log.warning("keep override hook failed; decision stands", exc_info=True)
            if self._metrics is not None:
                self._metrics.override_failed()
            return SamplingResult(keep, reason)

        if not keep and decision.keep is True:
            return SamplingResult(True, "override")
        return SamplingResult(keep, reason)


def describe(config: SamplingConfig) -> Dict[str, Any]:
    """Plain view of a sampling config, for startup diagnostics."""
    return {
        "rates": dict(config.rates),
        "keep": [r.model_dump(exclude_none=True) for r in config.keep],
    }
