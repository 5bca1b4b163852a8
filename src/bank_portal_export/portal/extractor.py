from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Locator

from ..errors import ExtractionError
from ..models import ExtractionRequest, SessionState, TransactionRecord
from ..util.dates import iter_months, month_bounds
from .probes import TextProbe, describe_probes, first_match, selector_probes
from .selectors import PortalSelectors
from .session import Session


logger = logging.getLogger(__name__)


def _choose_option(select: Locator, predicate: Callable[[str, str], bool]) -> Optional[str]:
    """
    Select the first <option> whose (value, label) satisfies `predicate`. Returns the chosen label.
    """
    for opt in select.locator("option").all():
        label = (opt.inner_text() or "").strip()
        value = opt.get_attribute("value")
        if not predicate(value or "", label):
            continue
        if value is not None:
            select.select_option(value=value)
        else:
            select.select_option(label=label)
        return label
    return None


class TransactionExtractor:
    """
    Scrape the transaction table of an authenticated Session into TransactionRecords.

    The result is a materialised list in table order; re-extraction means calling `extract` again.
    """

    def __init__(
        self,
        selectors: Optional[PortalSelectors] = None,
        *,
        probe_timeout_ms: int = 3_000,
        table_settle_ms: int = 2_000,
        selection_settle_ms: int = 1_000,
    ) -> None:
        self.selectors = selectors or PortalSelectors()
        self.probe_timeout_ms = probe_timeout_ms
        self.table_settle_ms = table_settle_ms
        self.selection_settle_ms = selection_settle_ms

    def extract(self, session: Session, request: ExtractionRequest) -> list[TransactionRecord]:
        if session.state != SessionState.ACTIVE:
            raise ExtractionError(
                f"Refusing to extract from a session that is not authenticated (state={session.state.value})",
                account=request.account_selector,
                period=request.period_label(),
                stage="precondition",
                url=session.url,
            )
        session.check_open()

        try:
            self.select_account(session, request)
            records = self._extract_period(session, request)
        except PlaywrightError as e:
            session.save_debug(name_prefix="extract_failure")
            raise ExtractionError(
                f"Browser error during extraction: {e}",
                account=request.account_selector,
                period=request.period_label(),
                url=session.url,
            ) from e

        session.touch()
        logger.info("Extracted %d transaction rows (period=%s).", len(records), request.period_label())
        return records

    def select_account(self, session: Session, request: ExtractionRequest) -> str:
        fragment = request.account_selector.strip()
        select_probes = selector_probes(self.selectors.account_selects, state="attached")
        match = first_match(session.page, select_probes, timeout_ms=self.probe_timeout_ms, before_each=session.check_open)
        if match is not None:
            label = _choose_option(match.locator, lambda value, label: fragment in label or fragment in value)
            if label is not None:
                logger.info("Selected account option %r.", label)
                session.pause(self.selection_settle_ms)
                return label
            logger.info("No account option contains %r; falling back to text click.", fragment)

        text_probe = TextProbe(fragment)
        loc = text_probe.try_match(session.page, timeout_ms=self.probe_timeout_ms)
        if loc is None:
            session.save_debug(name_prefix="account_not_found")
            raise ExtractionError(
                "Could not find the requested account",
                account=fragment,
                period=request.period_label(),
                stage="select_account",
                url=session.url,
                tried=[*describe_probes(select_probes), text_probe.describe()],
            )
        loc.click()
        session.pause(self.selection_settle_ms)
        return fragment

    def _extract_period(self, session: Session, request: ExtractionRequest) -> list[TransactionRecord]:
        start_probes = selector_probes(self.selectors.date_range_start_inputs)
        start_input = first_match(session.page, start_probes, timeout_ms=0)
        if start_input is not None:
            end_input = first_match(session.page, selector_probes(self.selectors.date_range_end_inputs), timeout_ms=0)
            self._set_date_range(session, start_input.locator, end_input.locator if end_input else None, request)
            return self._scrape_rows(session, request)

        first_month = request.period_start.replace(day=1)
        last_month_end = month_bounds(request.period_end.year, request.period_end.month)[1]
        if request.period_start != first_month or request.period_end != last_month_end:
            logger.warning(
                "Portal filters by whole months only; rows from %s to %s may fall outside the requested period %s.",
                first_month,
                last_month_end,
                request.period_label(),
            )

        records: list[TransactionRecord] = []
        for month_start in iter_months(request.period_start, request.period_end):
            self._set_month(session, request, month_start)
            records.extend(self._scrape_rows(session, request))
        return records

    def _set_date_range(
        self,
        session: Session,
        start_input: Locator,
        end_input: Optional[Locator],
        request: ExtractionRequest,
    ) -> None:
        start_input.fill(request.period_start.isoformat())
        if end_input is not None:
            end_input.fill(request.period_end.isoformat())
        apply_btn = first_match(session.page, selector_probes(self.selectors.date_range_applies), timeout_ms=0)
        if apply_btn is not None:
            apply_btn.locator.click()
        else:
            # No apply button: submit the filter form from the field.
            (end_input or start_input).press("Enter")
        logger.info("Date range set to %s.", request.period_label())

    def _set_month(self, session: Session, request: ExtractionRequest, month_start: date) -> None:
        month_probes = selector_probes(self.selectors.month_selects, state="attached")
        year_probes = selector_probes(self.selectors.year_selects, state="attached")
        month_sel = first_match(session.page, month_probes, timeout_ms=self.probe_timeout_ms, before_each=session.check_open)
        year_sel = first_match(session.page, year_probes, timeout_ms=self.probe_timeout_ms, before_each=session.check_open)
        if month_sel is None or year_sel is None:
            session.save_debug(name_prefix="period_controls_not_found")
            raise ExtractionError(
                "Could not find period filter controls (date range or month/year)",
                account=request.account_selector,
                period=request.period_label(),
                stage="select_period",
                url=session.url,
                tried=[
                    *describe_probes(selector_probes(self.selectors.date_range_start_inputs)),
                    *describe_probes(month_probes),
                    *describe_probes(year_probes),
                ],
            )

        # Year first: some pickers rebuild the month list when the year changes.
        year_text = str(month_start.year)
        if _choose_option(year_sel.locator, lambda value, label: value == year_text or label == year_text) is None:
            raise ExtractionError(
                f"Year {year_text} is not offered by the period filter",
                account=request.account_selector,
                period=request.period_label(),
                stage="select_period",
                url=session.url,
            )

        month_values = {f"{month_start.month:02d}", str(month_start.month)}
        if _choose_option(month_sel.locator, lambda value, label: value in month_values or label in month_values) is None:
            raise ExtractionError(
                f"Month {month_start.month:02d} is not offered by the period filter",
                account=request.account_selector,
                period=request.period_label(),
                stage="select_period",
                url=session.url,
            )
        logger.info("Period filter set to %04d-%02d.", month_start.year, month_start.month)

    def _scrape_rows(self, session: Session, request: ExtractionRequest) -> list[TransactionRecord]:
        session.pause(self.table_settle_ms)

        row_probes = selector_probes(self.selectors.transaction_rows, state="attached")
        match = first_match(session.page, row_probes, timeout_ms=self.probe_timeout_ms, before_each=session.check_open)
        if match is None:
            if session.page.locator("table").count() > 0:
                # Table rendered but empty: a period without transactions.
                return []
            session.save_debug(name_prefix="transaction_table_not_found")
            raise ExtractionError(
                "Could not find the transaction table",
                account=request.account_selector,
                period=request.period_label(),
                stage="scrape",
                url=session.url,
                tried=describe_probes(row_probes),
            )

        records: list[TransactionRecord] = []
        for row in session.page.locator(match.probe.describe()).all():
            cells = row.locator(self.selectors.transaction_cell).all_inner_texts()
            if not cells:
                # Header rows use <th>.
                continue
            if len(cells) < 7:
                logger.debug("Short transaction row (%d cells); trailing fields left empty.", len(cells))
            records.append(TransactionRecord.from_cells(cells))
        return records
