"""Dunning service: failed-payment recovery.

Tracks one DunningCase per failed invoice and escalates it through
reminder -> urgent -> final by days overdue:

    < 3 days   reminder
    3-6 days   urgent
    >= 7 days  final

A payment failure advances the stage at most one step, never beyond what
the days overdue justify and never backwards. A successful payment
resolves the case from any open stage; deleting the subscription closes
it as "subscription-canceled". Operators can also close a case by hand,
recording a payment received outside Stripe ("resolved") or voiding the
invoice ("voided"). Every closed stage is terminal.

Reminder emails go out on stage changes from the webhook path, and from
the daily `flask dunning-sweep` job for cases that age into a higher
stage without a new failure. Email failures are logged and never block
a state change.

Booking status is not touched here; it follows subscription events only.

Functions flush but do NOT commit; the caller commits (the sweep, which
runs from the CLI, commits per case).
"""

import logging
from datetime import timedelta

import click
import stripe
from flask import current_app

from billing_engine.errors import ConflictError, GatewayError
from billing_engine.extensions import db
from billing_engine.models.dunning import OPEN_STAGES, DunningCase
from billing_engine.services import stripe_service
from billing_engine.services.audit_service import log_billing_audit
from billing_engine.services.email_service import send_email, send_email_sync
from billing_engine.timeutils import as_utc, from_timestamp, utcnow

logger = logging.getLogger(__name__)

GENERIC_RETRY_FAILURE = "Payment could not be collected."

# Stripe Smart Retries gives up after this many automatic attempts
MAX_AUTOMATIC_ATTEMPTS = 4

CLOSED_MESSAGES = {
    "resolved": "Invoice already paid.",
    "voided": "Invoice has been voided.",
    "subscription-canceled": "Subscription has been canceled.",
}

DUNNING_SUBJECTS = {
    "reminder": "Payment failed: please update your payment method",
    "urgent": "Action required: your payment is {days} days overdue",
    "final": "Final notice: your ad placement will be canceled",
}


# ──────────────────────────────────────────────
# Stage arithmetic
# ──────────────────────────────────────────────

def severity_for_days(days_overdue):
    if days_overdue >= 7:
        return "final"
    if days_overdue >= 3:
        return "urgent"
    return "reminder"


def _rank(stage):
    return OPEN_STAGES.index(stage)


def next_stage(current, days_overdue):
    """Stage after one more failure: one step at most, capped by severity."""
    target = _rank(severity_for_days(days_overdue))
    if current is None:
        return OPEN_STAGES[0]
    step = min(_rank(current) + 1, len(OPEN_STAGES) - 1)
    return OPEN_STAGES[max(_rank(current), min(target, step))]


def days_overdue(case, now):
    return max((now - as_utc(case.overdue_since)).days, 0)


def get_case(invoice_id):
    return DunningCase.query.filter_by(invoice_id=invoice_id).first()


# ──────────────────────────────────────────────
# Notifications
# ──────────────────────────────────────────────

def _format_amount(amount, currency):
    return f"{amount / 100:,.2f} {currency.upper()}"


def _notify(case, now, sync=False):
    """Email the customer about the case's current stage.

    Returns True if the email was handed off. Failures are logged only.
    """
    stage = case.escalation_stage
    if not case.customer_email:
        logger.warning(f"Dunning case {case.invoice_id} has no customer email, not notifying")
        return False

    days = days_overdue(case, now)
    sender = send_email_sync if sync else send_email
    try:
        sender(
            to=case.customer_email,
            subject=DUNNING_SUBJECTS[stage].format(days=days),
            template=f"emails/dunning_{stage}.html",
            context={
                "invoice_id": case.invoice_id,
                "amount_due": _format_amount(case.amount_due, case.currency),
                "days_overdue": days,
                "attempt_count": case.attempt_count,
                "next_retry_at": case.next_retry_at,
                "billing_url": f"{current_app.config['APP_BASE_URL']}/billing",
            },
        )
    except Exception as e:
        # Never let email failure block the dunning state machine
        logger.error(f"Failed to send {stage} dunning email for {case.invoice_id}: {e}")
        return False

    case.last_notified_stage = stage
    case.last_notified_at = now
    logger.info(f"Dunning {stage} email sent for invoice {case.invoice_id}")
    return True


# ──────────────────────────────────────────────
# Webhook-driven transitions
# ──────────────────────────────────────────────

def record_payment_failure(invoice, occurred_at, event_id=None):
    """Handle invoice.payment_failed for an InvoiceData.

    Creates the case on first failure. Terminal cases are left untouched.
    Returns the DunningCase.
    """
    case = get_case(invoice.invoice_id)

    if case and not case.is_open:
        logger.info(
            f"Dunning case {case.invoice_id} is {case.escalation_stage}, ignoring failure"
        )
        return case

    if not case:
        case = DunningCase(
            invoice_id=invoice.invoice_id,
            overdue_since=invoice.due_date or occurred_at,
            attempt_count=0,
            manual_retry_count=0,
            escalation_stage=OPEN_STAGES[0],
        )
        db.session.add(case)
        old_stage = None
    else:
        old_stage = case.escalation_stage

    case.subscription_id = invoice.subscription_id or case.subscription_id
    case.customer_id = invoice.customer_id or case.customer_id
    case.customer_email = invoice.customer_email or case.customer_email
    case.amount_due = invoice.amount_due
    case.currency = invoice.currency
    case.attempt_count = (case.attempt_count or 0) + 1
    case.next_retry_at = invoice.next_payment_attempt
    if invoice.last_error:
        case.last_error_message = invoice.last_error

    days = max((occurred_at - as_utc(case.overdue_since)).days, 0)
    case.escalation_stage = next_stage(old_stage, days)
    db.session.flush()

    log_billing_audit("invoice.payment_failed", {
        "invoice_id": case.invoice_id,
        "subscription_id": case.subscription_id,
        "attempt_count": case.attempt_count,
        "stage": case.escalation_stage,
        "days_overdue": days,
    }, event_id=event_id)

    if case.escalation_stage != old_stage:
        logger.info(
            f"Dunning case {case.invoice_id}: {old_stage or 'new'} -> {case.escalation_stage}"
        )
        _notify(case, occurred_at)
        db.session.flush()

    return case


def record_payment_success(invoice, occurred_at, event_id=None):
    """Handle invoice.payment_succeeded: resolve any open case for the invoice."""
    case = get_case(invoice.invoice_id)
    if not case:
        return None
    if not case.is_open:
        return case

    old_stage = case.escalation_stage
    case.escalation_stage = "resolved"
    case.resolved_at = occurred_at
    case.next_retry_at = None
    db.session.flush()

    log_billing_audit("dunning.resolved", {
        "invoice_id": case.invoice_id,
        "from_stage": old_stage,
        "attempt_count": case.attempt_count,
    }, event_id=event_id)
    logger.info(f"Dunning case {case.invoice_id} resolved from {old_stage}")
    return case


def cancel_cases_for_subscription(subscription_id, now=None):
    """Close every open case of a deleted subscription. Returns the count."""
    now = now or utcnow()
    cases = (
        DunningCase.query
        .filter_by(subscription_id=subscription_id)
        .filter(DunningCase.escalation_stage.in_(OPEN_STAGES))
        .all()
    )
    for case in cases:
        case.escalation_stage = "subscription-canceled"
        case.resolved_at = now
        case.next_retry_at = None
    db.session.flush()

    if cases:
        logger.info(f"Closed {len(cases)} dunning case(s) for canceled {subscription_id}")
    return len(cases)


def handle_invoice_event(event):
    """Event router entry point for invoice.* events."""
    if event.type == "invoice.payment_failed":
        return record_payment_failure(event.data, event.created, event_id=event.id)
    return record_payment_success(event.data, event.created, event_id=event.id)


# ──────────────────────────────────────────────
# Manual retry
# ──────────────────────────────────────────────

def retry_invoice(invoice_id, now=None):
    """Courtesy retry of an open invoice through Stripe.

    Success resolves the case. Failure records the decline reason and
    bumps manual_retry_count but never moves the stage.

    Returns (success: bool, message: str); message is the gateway decline
    reason verbatim when there is one.
    Raises ValueError if no dunning case exists for the invoice.
    """
    now = now or utcnow()
    case = get_case(invoice_id)
    if not case:
        raise ValueError(f"No dunning case for invoice {invoice_id}")

    if case.escalation_stage == "resolved":
        return True, CLOSED_MESSAGES["resolved"]
    if not case.is_open:
        return False, CLOSED_MESSAGES[case.escalation_stage]

    try:
        invoice = stripe_service.pay_invoice(invoice_id)
    except stripe.StripeError as e:
        reason = e.user_message or GENERIC_RETRY_FAILURE
        logger.warning(f"Manual retry of {invoice_id} failed: {e}")
    else:
        if invoice.get("status") == "paid":
            _close(case, "resolved", now)
            log_billing_audit("dunning.manual_retry_succeeded", {"invoice_id": invoice_id})
            return True, "Payment collected."
        reason = GENERIC_RETRY_FAILURE
        logger.warning(f"Manual retry of {invoice_id} left invoice {invoice.get('status')}")

    case.manual_retry_count = (case.manual_retry_count or 0) + 1
    case.last_error_message = reason
    db.session.flush()
    log_billing_audit("dunning.manual_retry_failed", {
        "invoice_id": invoice_id,
        "reason": reason,
        "manual_retry_count": case.manual_retry_count,
    })
    return False, reason


def _pay_untracked(invoice_id):
    """Collect an invoice that has no open dunning case. Returns (success, message)."""
    try:
        invoice = stripe_service.pay_invoice(invoice_id)
    except stripe.StripeError as e:
        logger.warning(f"Retry of untracked invoice {invoice_id} failed: {e}")
        return False, e.user_message or GENERIC_RETRY_FAILURE
    if invoice.get("status") == "paid":
        return True, "Payment collected."
    return False, GENERIC_RETRY_FAILURE


def update_payment_method_and_retry(customer_id, payment_method_id, now=None):
    """Make a new payment method the customer's default and retry what failed.

    Every open invoice that has failed at least once is retried, and a
    decline on one does not stop the rest. Invoices with an open dunning
    case go through retry_invoice so the case records the outcome.

    Returns a list of {"invoice_id", "success", "message"} dicts.
    Raises GatewayError, with the decline reason as detail, if the payment
    method cannot be attached.
    """
    now = now or utcnow()
    try:
        stripe_service.set_default_payment_method(customer_id, payment_method_id)
        invoices = stripe_service.list_open_invoices(customer_id)
    except stripe.StripeError as e:
        logger.warning(f"Payment method update for {customer_id} failed: {e}")
        raise GatewayError(e.user_message or GENERIC_RETRY_FAILURE) from e

    results = []
    for invoice in invoices:
        if not invoice.get("attempt_count"):
            continue
        invoice_id = invoice["id"]
        case = get_case(invoice_id)
        if case and case.is_open:
            success, message = retry_invoice(invoice_id, now=now)
        else:
            success, message = _pay_untracked(invoice_id)
        results.append({"invoice_id": invoice_id, "success": success, "message": message})

    log_billing_audit("dunning.payment_method_updated", {
        "customer_id": customer_id,
        "invoices_retried": len(results),
        "invoices_recovered": sum(1 for r in results if r["success"]),
    })
    return results


# ──────────────────────────────────────────────
# Operator actions
# ──────────────────────────────────────────────

def _open_case(invoice_id):
    """The open case for an invoice.

    Raises ValueError if there is none, ConflictError if it is closed.
    """
    case = get_case(invoice_id)
    if not case:
        raise ValueError(f"No dunning case for invoice {invoice_id}")
    if not case.is_open:
        raise ConflictError(
            CLOSED_MESSAGES[case.escalation_stage], stage=case.escalation_stage
        )
    return case


def _close(case, stage, now):
    """Move a case to a terminal stage. Returns the stage it left."""
    old_stage = case.escalation_stage
    case.escalation_stage = stage
    case.resolved_at = now
    case.next_retry_at = None
    db.session.flush()
    return old_stage


def mark_paid_out_of_band(invoice_id, now=None):
    """Record a payment received outside Stripe and resolve the case.

    Raises ValueError, ConflictError (case already closed) or GatewayError.
    """
    now = now or utcnow()
    case = _open_case(invoice_id)
    try:
        stripe_service.mark_invoice_paid_out_of_band(invoice_id)
    except stripe.StripeError as e:
        logger.error(f"Could not mark {invoice_id} paid out of band: {e}")
        raise GatewayError(str(e)) from e

    old_stage = _close(case, "resolved", now)
    log_billing_audit("dunning.paid_out_of_band", {
        "invoice_id": invoice_id,
        "from_stage": old_stage,
        "amount_due": case.amount_due,
    })
    logger.info(f"Dunning case {invoice_id} resolved out of band from {old_stage}")
    return case


def void_invoice(invoice_id, now=None):
    """Void the invoice in Stripe and close its case as "voided".

    Raises ValueError, ConflictError (case already closed) or GatewayError.
    """
    now = now or utcnow()
    case = _open_case(invoice_id)
    try:
        stripe_service.void_invoice(invoice_id)
    except stripe.StripeError as e:
        logger.error(f"Could not void invoice {invoice_id}: {e}")
        raise GatewayError(str(e)) from e

    old_stage = _close(case, "voided", now)
    log_billing_audit("dunning.voided", {
        "invoice_id": invoice_id,
        "from_stage": old_stage,
        "amount_due": case.amount_due,
    })
    logger.info(f"Dunning case {invoice_id} voided from {old_stage}")
    return case


# ──────────────────────────────────────────────
# Read model
# ──────────────────────────────────────────────

def get_retry_schedule(invoice_id):
    """Where Stripe's automatic retries stand for one invoice.

    Raises GatewayError if the invoice cannot be fetched.
    """
    try:
        invoice = stripe_service.retrieve_invoice(invoice_id)
    except stripe.StripeError as e:
        logger.error(f"Could not retrieve invoice {invoice_id}: {e}")
        raise GatewayError(str(e)) from e

    attempts = invoice.get("attempt_count") or 0
    next_attempt = from_timestamp(invoice.get("next_payment_attempt"))
    case = get_case(invoice_id)
    return {
        "invoice_id": invoice_id,
        "attempts_made": attempts,
        "max_attempts": MAX_AUTOMATIC_ATTEMPTS,
        "next_attempt_at": next_attempt.isoformat() if next_attempt else None,
        "will_retry_automatically": (
            attempts < MAX_AUTOMATIC_ATTEMPTS and invoice.get("status") == "open"
        ),
        "escalation_stage": case.escalation_stage if case else None,
    }


def get_dunning_status(customer_id=None, subscription_id=None):
    """Summarize dunning state for a customer or a subscription."""
    query = DunningCase.query
    if subscription_id:
        query = query.filter_by(subscription_id=subscription_id)
    if customer_id:
        query = query.filter_by(customer_id=customer_id)
    cases = query.order_by(DunningCase.created_at.desc()).all()

    open_cases = [c for c in cases if c.is_open]
    retry_dates = sorted(as_utc(c.next_retry_at) for c in open_cases if c.next_retry_at)

    return {
        "has_failed_payments": bool(open_cases),
        "total_outstanding": sum(c.amount_due for c in open_cases),
        "next_retry_at": retry_dates[0].isoformat() if retry_dates else None,
        "subscription_at_risk": any(c.escalation_stage == "final" for c in open_cases),
        "cases": [c.to_dict() for c in cases],
    }


# ──────────────────────────────────────────────
# Periodic sweep
# ──────────────────────────────────────────────

def process_dunning_sweep(now=None, dry_run=False):
    """Escalate open cases by days overdue and send due reminders.

    At most one email per stage per case, and at most one per
    DUNNING_NOTIFY_INTERVAL_HOURS.

    Args:
        dry_run: If True, report what would happen but change nothing.

    Returns:
        int: Number of emails sent (or would-be-sent in dry-run mode).
    """
    now = now or utcnow()
    interval = timedelta(hours=current_app.config["DUNNING_NOTIFY_INTERVAL_HOURS"])
    sent_count = 0

    if dry_run:
        click.echo("[DRY RUN] No emails will actually be sent.\n")

    cases = (
        DunningCase.query
        .filter(DunningCase.escalation_stage.in_(OPEN_STAGES))
        .order_by(DunningCase.overdue_since.asc())
        .all()
    )
    click.echo(f"Found {len(cases)} open dunning case(s).")

    for case in cases:
        days = days_overdue(case, now)
        current = case.escalation_stage
        target = OPEN_STAGES[max(_rank(current), _rank(severity_for_days(days)))]

        click.echo(f"── {case.invoice_id} ({days}d overdue, {current}) ──")

        if case.last_notified_stage == target:
            click.echo(f"   {target.upper()}: already notified")
            continue

        last_sent = as_utc(case.last_notified_at)
        if last_sent and now - last_sent < interval:
            click.echo(f"   {target.upper()}: notified {last_sent:%Y-%m-%d %H:%M}, waiting")
            continue

        if dry_run:
            click.echo(f"   {target.upper()}: WOULD SEND → {case.customer_email}")
            sent_count += 1
            continue

        if target != current:
            case.escalation_stage = target
            log_billing_audit("dunning.escalated", {
                "invoice_id": case.invoice_id,
                "from_stage": current,
                "to_stage": target,
                "days_overdue": days,
            })

        if _notify(case, now, sync=True):
            sent_count += 1
            click.echo(f"   {target.upper()}: ✓ sent to {case.customer_email}")
        else:
            click.echo(f"   {target.upper()}: ✗ not sent")
        db.session.commit()

    click.echo(
        f"{'[DRY RUN] ' if dry_run else ''}Done: {sent_count} dunning email(s) "
        f"{'would be ' if dry_run else ''}sent."
    )
    return sent_count
