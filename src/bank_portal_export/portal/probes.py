from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence, Union

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Frame, Locator, Page


logger = logging.getLogger(__name__)

Scope = Union[Page, Frame, Locator]


def _settle_locator(loc: Locator, *, state: str, timeout_ms: int) -> bool:
    """
    Return True once `loc` reaches `state` within `timeout_ms`.

    Playwright treats timeout=0 as "wait forever", so a zero budget is an immediate check instead.
    """
    if timeout_ms <= 0:
        if loc.count() <= 0:
            return False
        return loc.is_visible() if state == "visible" else True
    loc.wait_for(state=state, timeout=timeout_ms)
    return True


@dataclass(frozen=True)
class SelectorProbe:
    """
    One candidate way of locating a UI element: a Playwright selector string (CSS, `text=`, `:has-text()`...).
    """

    selector: str
    state: str = "visible"

    def try_match(self, scope: Scope, *, timeout_ms: int) -> Optional[Locator]:
        loc = scope.locator(self.selector).first
        try:
            if _settle_locator(loc, state=self.state, timeout_ms=timeout_ms):
                return loc
        except PlaywrightError:
            # Timeouts and malformed selectors both just mean "not this candidate".
            logger.debug("Probe miss: %s", self.selector)
        return None

    def describe(self) -> str:
        return self.selector


@dataclass(frozen=True)
class TextProbe:
    """
    Candidate located by visible text rather than markup; used when no structured selector exists.
    """

    text: str
    exact: bool = False
    state: str = "visible"

    def try_match(self, scope: Scope, *, timeout_ms: int) -> Optional[Locator]:
        loc = scope.get_by_text(self.text, exact=self.exact).first
        try:
            if _settle_locator(loc, state=self.state, timeout_ms=timeout_ms):
                return loc
        except PlaywrightError:
            logger.debug("Probe miss: text=%r", self.text)
        return None

    def describe(self) -> str:
        return f"text={self.text!r}"


Probe = Union[SelectorProbe, TextProbe]


@dataclass(frozen=True)
class ProbeMatch:
    probe: Probe
    locator: Locator
    index: int


def selector_probes(selectors: Iterable[str], *, state: str = "visible") -> tuple[SelectorProbe, ...]:
    return tuple(SelectorProbe(selector=s, state=state) for s in selectors if s)


def describe_probes(probes: Sequence[Probe]) -> list[str]:
    return [p.describe() for p in probes]


def first_match(
    scope: Scope,
    probes: Sequence[Probe],
    *,
    timeout_ms: int,
    before_each: Optional[Callable[[], None]] = None,
) -> Optional[ProbeMatch]:
    """
    Try each probe in priority order with its own bounded wait; the first hit wins.

    `before_each` runs ahead of every probe (used to abort when the owning Session is closed).
    """
    for idx, probe in enumerate(probes):
        if before_each is not None:
            before_each()
        loc = probe.try_match(scope, timeout_ms=timeout_ms)
        if loc is not None:
            logger.debug("Probe hit #%d: %s", idx, probe.describe())
            return ProbeMatch(probe=probe, locator=loc, index=idx)
    return None
