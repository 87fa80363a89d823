"""Text rendering for payment outcome messages and administrator summaries."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..database.models import Payment, Slip, PayloadKind


def format_amount(amount: int, currency: str) -> str:
    """Format minor units as a display amount, e.g. ``70.00 THB``."""
    return f"{amount / 100:,.2f} {currency}"


_TEMPLATES = {
    PayloadKind.SUCCESS.value: (
        "Payment received: {amount} for {period} (member {member_id}). "
        "Transaction {transaction_ref}. Thank you!"
    ),
    PayloadKind.MISMATCH.value: (
        "We could not match your transfer to the {period} due of {amount} "
        "(member {member_id}). An administrator will review it."
    ),
    PayloadKind.EXPIRED.value: (
        "The {period} due of {amount} (member {member_id}) has expired without a payment."
    ),
    PayloadKind.FAILURE.value: (
        "Processing of the {period} due of {amount} (member {member_id}) failed "
        "and needs manual review. Reason: {reason}"
    ),
}


def render_payload(
    kind: str,
    payment: Payment,
    slip: Optional[Slip] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Snapshot the message for a terminal transition.

    Args:
        kind: Payload kind (success, mismatch, expired, failure).
        payment: Payment after the transition.
        slip: Slip that settled or triggered the transition, if any.
        reason: Failure reason, if any.

    Returns:
        Payload dictionary stored on the notification task.
    """
    transaction_ref = slip.provider_transaction_ref if slip is not None else None
    values = {
        "amount": format_amount(payment.expected_amount, payment.currency),
        "period": payment.due_date.strftime("%B %Y"),
        "member_id": payment.member_id,
        "transaction_ref": transaction_ref or "-",
        "reason": reason or payment.failure_reason or "-",
    }
    return {
        "kind": kind,
        "text": _TEMPLATES[kind].format(**values),
        "payment_id": payment.id,
        "member_id": payment.member_id,
        "cohort_id": payment.cohort_id,
        "amount": payment.expected_amount,
        "currency": payment.currency,
        "due_date": payment.due_date.isoformat(),
        "slip_id": slip.id if slip is not None else None,
        "transaction_ref": transaction_ref,
        "reason": reason,
    }


def render_daily_summary(
    day: datetime,
    verified: int,
    verified_amount: int,
    waiting: int,
    rejected: int,
    currency: str,
    expired: int = 0,
    mismatched: int = 0,
) -> Dict[str, Any]:
    """Snapshot the administrator's daily digest of slip uploads.

    Args:
        day: End of the day covered.
        verified: Slips that passed provider verification.
        verified_amount: Sum of their verified amounts, in minor units.
        waiting: Slips still pending or being verified.
        rejected: Slips rejected or flagged as duplicates.
        currency: Currency the amount is shown in.
        expired: Payments the sweep expired.
        mismatched: Payments the sweep closed as mismatched.
    """
    text = (
        f"Daily summary for {day:%d %B %Y}: {verified} slip(s) verified "
        f"totalling {format_amount(verified_amount, currency)}, {waiting} waiting, "
        f"{rejected} rejected. Payments closed today: {expired} expired, "
        f"{mismatched} mismatched."
    )
    return {
        "kind": PayloadKind.DAILY_SUMMARY.value,
        "text": text,
        "day": day.isoformat(),
        "verified": verified,
        "verified_amount": verified_amount,
        "waiting": waiting,
        "rejected": rejected,
        "currency": currency,
        "payments_expired": expired,
        "payments_mismatched": mismatched,
    }


def render_monthly_summary(
    period_start: datetime,
    outstanding: Sequence[Tuple[str, str, int, int]],
) -> Dict[str, Any]:
    """Snapshot the administrator's reminder of unpaid dues for a month.

    Args:
        period_start: First instant of the month.
        outstanding: Rows of (cohort_id, currency, unpaid count, unpaid amount).
    """
    totals: Dict[str, List[int]] = {}
    for _, currency, count, amount in outstanding:
        per_currency = totals.setdefault(currency, [0, 0])
        per_currency[0] += count
        per_currency[1] += amount

    unpaid = sum(count for count, _ in totals.values())
    if unpaid == 0:
        text = f"Monthly reminder for {period_start:%B %Y}: every due has been paid or closed."
    else:
        amounts = ", ".join(format_amount(amount, currency) for currency, (_, amount) in sorted(totals.items()))
        lines = [f"Monthly reminder for {period_start:%B %Y}: {unpaid} payment(s) unpaid, {amounts} outstanding."]
        for cohort_id, currency, count, amount in outstanding:
            if count:
                lines.append(f"- {cohort_id}: {count} unpaid, {format_amount(amount, currency)}")
        text = "\n".join(lines)

    return {
        "kind": PayloadKind.MONTHLY_SUMMARY.value,
        "text": text,
        "period_start": period_start.isoformat(),
        "unpaid": unpaid,
        "outstanding": {currency: amount for currency, (_, amount) in totals.items()},
        "cohorts": [
            {"cohort_id": cohort_id, "currency": currency, "count": count, "amount": amount}
            for cohort_id, currency, count, amount in outstanding
        ],
    }
