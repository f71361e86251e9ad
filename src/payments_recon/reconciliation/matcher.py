"""Matching engine pairing app ledger records with gateway ledger records."""

import logging
import re
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz

from .models import (
    ItemStatus,
    LedgerRecord,
    MatchResult,
    MatchSummary,
    RecordSource,
    ReconciliationItem,
)
from .tolerance import TolerancePolicy

logger = logging.getLogger(__name__)

# Relative weight of each fuzzy score component
AMOUNT_WEIGHT = 40.0
DATE_WEIGHT = 20.0
IDENTITY_WEIGHT = 40.0

# Amount credit decays to zero at this multiple of the effective tolerance
AMOUNT_DECAY_FACTOR = 3

PHONE_DIGITS = 9

METHOD_EXACT = "exact"
METHOD_FUZZY = "fuzzy"


def app_item_id(index: int) -> str:
    return f"app-{index}"


def gateway_item_id(index: int) -> str:
    return f"gateway-{index}"


def _normalize_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    return digits[-PHONE_DIGITS:]


class _Pairing:
    """Classification of one record, filled in while the passes run."""

    __slots__ = ("status", "match_reference", "discrepancy", "notes", "metadata")

    def __init__(
        self,
        status: ItemStatus,
        match_reference: Optional[str] = None,
        discrepancy: Optional[Decimal] = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, object]] = None,
    ):
        self.status = status
        self.match_reference = match_reference
        self.discrepancy = discrepancy
        self.notes = notes
        self.metadata = metadata or {}


class Matcher:
    """Two-pass, greedy, one-to-one matcher.

    The exact pass pairs records sharing a match key (transaction ID, else
    reference). The fuzzy pass scores the remaining dated records on amount,
    date and identity similarity and pairs the best candidate when its score
    reaches the policy threshold. Whatever is left is reported unmatched.

    The matcher is deterministic for a fixed input and policy and never
    mutates the records it is given.
    """

    def __init__(self, policy: TolerancePolicy):
        self.policy = policy

    def match(
        self,
        app_records: Sequence[LedgerRecord],
        gateway_records: Sequence[LedgerRecord],
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> MatchResult:
        """Classify every app and gateway record.

        Args:
            app_records: Records from the application ledger.
            gateway_records: Records from the gateway ledger.
            cancel_check: Optional callable polled between the two passes;
                when it returns True matching stops and the result is
                flagged ``cancelled``.

        Returns:
            MatchResult with one item per input record and the summary.
        """
        app_pairings: List[Optional[_Pairing]] = [None] * len(app_records)
        gateway_pairings: List[Optional[_Pairing]] = [None] * len(gateway_records)

        logger.info(
            f"Starting matching: {len(app_records)} app, "
            f"{len(gateway_records)} gateway records"
        )

        self._exact_pass(app_records, gateway_records, app_pairings, gateway_pairings)

        if cancel_check is not None and cancel_check():
            logger.warning("Matching cancelled after exact pass")
            return MatchResult(cancelled=True)

        self._fuzzy_pass(app_records, gateway_records, app_pairings, gateway_pairings)

        items = self._build_items(app_records, gateway_records, app_pairings, gateway_pairings)
        summary = self._summarize(app_records, gateway_records, items)

        logger.info(
            f"Matching complete: {summary.matched} matched, "
            f"{summary.amount_mismatch} amount mismatches, "
            f"{summary.unmatched_app} unmatched app, "
            f"{summary.unmatched_gateway} unmatched gateway, "
            f"{summary.duplicate} duplicates"
        )
        return MatchResult(items=items, summary=summary)

    def _pair(
        self,
        app_index: int,
        app: LedgerRecord,
        gateway_index: int,
        gateway: LedgerRecord,
        app_pairings: List[Optional[_Pairing]],
        gateway_pairings: List[Optional[_Pairing]],
        metadata: Dict[str, object],
    ) -> None:
        if self.policy.amounts_match(app.amount, gateway.amount):
            status = ItemStatus.MATCHED
            discrepancy = None
        else:
            status = ItemStatus.AMOUNT_MISMATCH
            discrepancy = app.amount - gateway.amount

        app_pairings[app_index] = _Pairing(
            status,
            match_reference=gateway_item_id(gateway_index),
            discrepancy=discrepancy,
            metadata=dict(metadata),
        )
        gateway_pairings[gateway_index] = _Pairing(
            status,
            match_reference=app_item_id(app_index),
            discrepancy=discrepancy,
            metadata=dict(metadata),
        )

    def _exact_pass(
        self,
        app_records: Sequence[LedgerRecord],
        gateway_records: Sequence[LedgerRecord],
        app_pairings: List[Optional[_Pairing]],
        gateway_pairings: List[Optional[_Pairing]],
    ) -> None:
        # Gateway records keyed by match key, earliest transaction first
        groups: Dict[str, List[int]] = {}
        for index, record in enumerate(gateway_records):
            key = record.match_key
            if key:
                groups.setdefault(key, []).append(index)
        for indices in groups.values():
            indices.sort(key=lambda i: (
                gateway_records[i].transaction_date is None,
                gateway_records[i].transaction_date or 0,
                i,
            ))

        # Key -> app index that consumed the group head
        claimed_by: Dict[str, int] = {}

        for app_index, app in enumerate(app_records):
            key = app.match_key
            if not key or key not in groups:
                continue

            if key in claimed_by:
                original = claimed_by[key]
                app_pairings[app_index] = _Pairing(
                    ItemStatus.DUPLICATE,
                    match_reference=app_item_id(original),
                    notes=f"Duplicate of {app_item_id(original)} for key {key}",
                    metadata={"match_method": METHOD_EXACT},
                )
                continue

            head, *others = groups[key]
            self._pair(
                app_index, app, head, gateway_records[head],
                app_pairings, gateway_pairings,
                metadata={"match_method": METHOD_EXACT},
            )
            claimed_by[key] = app_index

            for other in others:
                if gateway_pairings[other] is None:
                    gateway_pairings[other] = _Pairing(
                        ItemStatus.DUPLICATE,
                        match_reference=gateway_item_id(head),
                        notes=f"Duplicate of {gateway_item_id(head)} for key {key}",
                        metadata={"match_method": METHOD_EXACT},
                    )

    def _fuzzy_pass(
        self,
        app_records: Sequence[LedgerRecord],
        gateway_records: Sequence[LedgerRecord],
        app_pairings: List[Optional[_Pairing]],
        gateway_pairings: List[Optional[_Pairing]],
    ) -> None:
        threshold = self.policy.fuzzy_match_threshold

        for app_index, app in enumerate(app_records):
            if app_pairings[app_index] is not None or app.transaction_date is None:
                continue

            best: Optional[Tuple[float, int, Decimal, int]] = None
            for gateway_index, gateway in enumerate(gateway_records):
                if gateway_pairings[gateway_index] is not None:
                    continue
                if not self.policy.within_date_window(app.transaction_date, gateway.transaction_date):
                    continue

                score = self.score(app, gateway)
                date_delta = self.policy.date_delta_days(app.transaction_date, gateway.transaction_date)
                amount_delta = abs(app.amount - gateway.amount)
                candidate = (score, date_delta, amount_delta, gateway_index)
                if best is None or self._ranks_before(candidate, best):
                    best = candidate

            if best is None or best[0] < threshold:
                continue

            score, _, _, gateway_index = best
            self._pair(
                app_index, app, gateway_index, gateway_records[gateway_index],
                app_pairings, gateway_pairings,
                metadata={"match_method": METHOD_FUZZY, "match_score": round(score, 2)},
            )

    @staticmethod
    def _ranks_before(
        candidate: Tuple[float, int, Decimal, int],
        best: Tuple[float, int, Decimal, int],
    ) -> bool:
        # Highest score, then smallest date delta, amount delta, gateway index
        return (-candidate[0], candidate[1], candidate[2], candidate[3]) < (
            -best[0], best[1], best[2], best[3]
        )

    def score(self, app: LedgerRecord, gateway: LedgerRecord) -> float:
        """Composite similarity score between two records, 0 to 100.

        Weighted mean of amount closeness, date proximity and identity
        similarity. Components that cannot be computed for the pair are
        left out and the remaining weights renormalised.
        """
        components: List[Tuple[float, float]] = [
            (AMOUNT_WEIGHT, self._amount_credit(app.amount, gateway.amount)),
        ]

        date_credit = self._date_credit(app, gateway)
        if date_credit is not None:
            components.append((DATE_WEIGHT, date_credit))

        identity_credit = self._identity_credit(app, gateway)
        if identity_credit is not None:
            components.append((IDENTITY_WEIGHT, identity_credit))

        total_weight = sum(weight for weight, _ in components)
        weighted = sum(weight * credit for weight, credit in components)
        return 100.0 * weighted / total_weight

    def _amount_credit(self, app_amount: Decimal, gateway_amount: Decimal) -> float:
        difference = abs(app_amount - gateway_amount)
        tolerance = self.policy.effective_amount_tolerance(app_amount, gateway_amount)
        if difference <= tolerance:
            return 1.0
        if tolerance == 0:
            return 0.0
        decay_span = tolerance * (AMOUNT_DECAY_FACTOR - 1)
        credit = 1 - (difference - tolerance) / decay_span
        return max(0.0, float(credit))

    def _date_credit(self, app: LedgerRecord, gateway: LedgerRecord) -> Optional[float]:
        delta = self.policy.date_delta_days(app.transaction_date, gateway.transaction_date)
        if delta is None:
            return None
        window = self.policy.date_tolerance_days
        if window == 0:
            return 1.0 if delta == 0 else 0.0
        return max(0.0, 1 - delta / window)

    @staticmethod
    def _identity_credit(app: LedgerRecord, gateway: LedgerRecord) -> Optional[float]:
        ratios: List[float] = []

        if app.payer_name and gateway.payer_name:
            ratios.append(fuzz.token_set_ratio(
                app.payer_name.lower(), gateway.payer_name.lower()
            ) / 100)

        if app.payer_email and gateway.payer_email:
            ratios.append(fuzz.ratio(
                app.payer_email.strip().lower(), gateway.payer_email.strip().lower()
            ) / 100)

        if app.payer_phone and gateway.payer_phone:
            app_phone = _normalize_phone(app.payer_phone)
            gateway_phone = _normalize_phone(gateway.payer_phone)
            if app_phone and gateway_phone:
                ratios.append(1.0 if app_phone == gateway_phone else fuzz.ratio(app_phone, gateway_phone) / 100)

        if app.reference and gateway.reference:
            ratios.append(fuzz.ratio(
                app.reference.strip().lower(), gateway.reference.strip().lower()
            ) / 100)

        if not ratios:
            return None
        return sum(ratios) / len(ratios)

    @staticmethod
    def _build_items(
        app_records: Sequence[LedgerRecord],
        gateway_records: Sequence[LedgerRecord],
        app_pairings: List[Optional[_Pairing]],
        gateway_pairings: List[Optional[_Pairing]],
    ) -> List[ReconciliationItem]:
        items: List[ReconciliationItem] = []

        for index, record in enumerate(app_records):
            pairing = app_pairings[index] or _Pairing(ItemStatus.UNMATCHED_APP)
            items.append(ReconciliationItem.from_record(
                app_item_id(index), record, pairing.status,
                match_reference=pairing.match_reference,
                discrepancy_amount=pairing.discrepancy,
                notes=pairing.notes,
                metadata=pairing.metadata,
            ))

        for index, record in enumerate(gateway_records):
            pairing = gateway_pairings[index] or _Pairing(ItemStatus.UNMATCHED_GATEWAY)
            items.append(ReconciliationItem.from_record(
                gateway_item_id(index), record, pairing.status,
                match_reference=pairing.match_reference,
                discrepancy_amount=pairing.discrepancy,
                notes=pairing.notes,
                metadata=pairing.metadata,
            ))

        return items

    @staticmethod
    def _summarize(
        app_records: Sequence[LedgerRecord],
        gateway_records: Sequence[LedgerRecord],
        items: List[ReconciliationItem],
    ) -> MatchSummary:
        summary = MatchSummary(
            total_app_amount=sum((r.amount for r in app_records), Decimal("0")),
            total_gateway_amount=sum((r.amount for r in gateway_records), Decimal("0")),
        )

        # Pairs are counted once, from the app side
        for item in items:
            status = item.reconciliation_status
            from_app = item.source == RecordSource.APP
            if status == ItemStatus.MATCHED and from_app:
                summary.matched += 1
            elif status == ItemStatus.AMOUNT_MISMATCH and from_app:
                summary.amount_mismatch += 1
                summary.total_discrepancy += abs(item.discrepancy_amount)
            elif status == ItemStatus.UNMATCHED_APP:
                summary.unmatched_app += 1
            elif status == ItemStatus.UNMATCHED_GATEWAY:
                summary.unmatched_gateway += 1
            elif status == ItemStatus.DUPLICATE:
                if from_app:
                    summary.duplicate_app += 1
                else:
                    summary.duplicate_gateway += 1

        return summary
