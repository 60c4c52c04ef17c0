#!/usr/bin/env python3
"""Command-line interface for tenant payment tools.

Usage:
    tenant-payments status ORDER-123
    tenant-payments pending --invoice 42 --tenant 7
    tenant-payments validate-proof receipt.png --bank-name BCA --account-number 123 \\
        --holder "Budi" --transfer-date 2024-05-01
    tenant-payments pay --invoice 42 --tenant 7 --simulate success --amount 150000 --countdown 30
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from typing import Optional

from .backend import BackendClient
from .config import Settings, get_settings
from .errors import GatewayRejected, PaymentError
from .gateway import BackendGatewayClient, GatewayClientBase, SimulatorConfig, SimulatorGatewayClient, SimulatorScenario
from .manual import ManualProofSubmitter, PendingPaymentGuard, ProofArtifact
from .models import IntentState, Invoice, ManualPaymentForm, PaymentMethod, PaymentSnapshot
from .reconciliation import SignalOutcome, normalize_status
from .session import PaymentSession
from .window import ClientSideOpener, RedirectWindowController, SystemBrowserOpener

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NOT_SUCCESSFUL = 1
EXIT_ERROR = 2


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_date(value: str) -> date:
    """Parse a YYYY-MM-DD date for argparse."""
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date: {value}. Expected format: YYYY-MM-DD")


def _build_gateway(settings: Settings, backend: BackendClient, simulate: Optional[str]) -> GatewayClientBase:
    if simulate:
        return SimulatorGatewayClient(SimulatorConfig(
            scenario=SimulatorScenario(simulate),
            server_key=settings.gateway_server_key,
        ))
    return BackendGatewayClient(backend, server_key=settings.gateway_server_key)


async def check_status_async(settings: Settings, reference: str) -> int:
    """Run a single gateway status check and print the normalized outcome."""
    async with BackendClient.from_settings(settings) as backend:
        gateway = BackendGatewayClient(backend)
        status = await gateway.check_status(reference)
    outcome = normalize_status(status.status)
    print(json.dumps({
        "reference": reference,
        "status": status.status,
        "outcome": outcome.value,
        "amount": status.amount,
        "paymentType": status.payment_type,
    }, indent=2))
    return EXIT_OK if outcome == SignalOutcome.SUCCESS else EXIT_NOT_SUCCESSFUL


async def check_pending_async(settings: Settings, invoice_id: int, tenant_id: int) -> int:
    """Report whether a manual payment is already awaiting verification."""
    async with BackendClient.from_settings(settings) as backend:
        check = await PendingPaymentGuard(backend).has_pending_manual_payment(invoice_id, tenant_id)
    print(check.model_dump_json(indent=2))
    return EXIT_NOT_SUCCESSFUL if check.blocked else EXIT_OK


def validate_proof(settings: Settings, path: str, form: ManualPaymentForm) -> int:
    """Validate a proof file locally without contacting the backend.

    The submitter is built without a backend client because validation never
    touches the network.
    """
    artifact = ProofArtifact.from_path(path)
    submitter = ManualProofSubmitter(backend=None, max_size_bytes=settings.max_proof_size_bytes)
    violations = submitter.validate(artifact, form)
    print(json.dumps({
        "file": artifact.file_name,
        "mimeType": artifact.mime_type,
        "sizeBytes": artifact.size_bytes,
        "valid": not violations,
        "violations": [v.model_dump() for v in violations],
    }, indent=2))
    return EXIT_NOT_SUCCESSFUL if violations else EXIT_OK


async def pay_async(
    settings: Settings,
    invoice_id: int,
    tenant_id: int,
    simulate: Optional[str] = None,
    amount: Optional[int] = None,
    open_browser: bool = True,
) -> int:
    """Run an online payment session to a terminal state, printing snapshots."""
    finished = asyncio.Event()

    def on_snapshot(snapshot: PaymentSnapshot) -> None:
        print(snapshot.model_dump_json(by_alias=True, exclude={"invoice"}))
        if snapshot.is_terminal:
            finished.set()

    async with BackendClient.from_settings(settings) as backend:
        gateway = _build_gateway(settings, backend, simulate)
        invoice = Invoice(invoice_id=invoice_id, amount=amount) if amount is not None else None
        opener = SystemBrowserOpener() if open_browser and not simulate else ClientSideOpener()
        session = await PaymentSession.create(
            invoice_id,
            PaymentMethod.ONLINE,
            backend=backend,
            gateway=gateway,
            settings=settings,
            tenant_id=tenant_id,
            invoice=invoice,
            window=RedirectWindowController(opener, settings.window_watch_interval_seconds),
            on_notice=lambda notice: logger.info(f"[{notice.level.value}] {notice.title}: {notice.message}"),
        )
        async with session:
            session.subscribe(on_snapshot)
            try:
                snapshot = await session.begin()
            except GatewayRejected as e:
                logger.error(f"Gateway rejected invoice {invoice_id}: {e.message}")
                return EXIT_NOT_SUCCESSFUL
            if snapshot.redirect_url:
                print(f"Complete the payment at: {snapshot.redirect_url}")
            if not snapshot.is_terminal:
                await finished.wait()
            final = session.snapshot()

    logger.info(f"Invoice {invoice_id} payment finished as {final.state.value}")
    return EXIT_OK if final.state == IntentState.SUCCEEDED else EXIT_NOT_SUCCESSFUL


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="tenant-payments",
        description="Tenant invoice payment and status reconciliation tools.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    status_parser = subparsers.add_parser("status", help="Check the gateway status of an order")
    status_parser.add_argument("reference", help="Gateway order ID (external reference)")

    pending_parser = subparsers.add_parser("pending", help="Check for a manual payment awaiting verification")
    pending_parser.add_argument("--invoice", "-i", type=int, required=True, help="Invoice ID")
    pending_parser.add_argument("--tenant", "-t", type=int, help="Tenant ID (default: from settings)")

    proof_parser = subparsers.add_parser("validate-proof", help="Validate a bank-transfer proof file")
    proof_parser.add_argument("file", help="Path to the receipt (JPEG, PNG, GIF or PDF)")
    proof_parser.add_argument("--bank-name", default="", help="Sending bank")
    proof_parser.add_argument("--account-number", default="", help="Sending account number")
    proof_parser.add_argument("--holder", default="", help="Account holder name")
    proof_parser.add_argument("--transfer-date", type=parse_date, help="Transfer date (YYYY-MM-DD)")

    pay_parser = subparsers.add_parser("pay", help="Pay an invoice online and wait for the outcome")
    pay_parser.add_argument("--invoice", "-i", type=int, required=True, help="Invoice ID")
    pay_parser.add_argument("--tenant", "-t", type=int, help="Tenant ID (default: from settings)")
    pay_parser.add_argument(
        "--simulate",
        choices=[s.value for s in SimulatorScenario],
        help="Use the simulator gateway with the given scenario",
    )
    pay_parser.add_argument("--amount", type=int, help="Invoice amount; skips fetching the invoice")
    pay_parser.add_argument("--countdown", type=int, help="Countdown budget in seconds (default: from settings)")
    pay_parser.add_argument("--poll-interval", type=float, help="Seconds between status checks")
    pay_parser.add_argument("--no-browser", action="store_true", help="Print the payment URL instead of opening it")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return EXIT_NOT_SUCCESSFUL

    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        if parsed_args.command == "status":
            return asyncio.run(check_status_async(settings, parsed_args.reference))

        if parsed_args.command == "validate-proof":
            form = ManualPaymentForm(
                bank_name=parsed_args.bank_name,
                account_number=parsed_args.account_number,
                account_holder_name=parsed_args.holder,
                transfer_date=parsed_args.transfer_date,
            )
            return validate_proof(settings, parsed_args.file, form)

        tenant_id = parsed_args.tenant if parsed_args.tenant is not None else settings.tenant_id
        if tenant_id is None:
            logger.error("A tenant ID is required (--tenant or TENANT_PAYMENTS_TENANT_ID)")
            return EXIT_ERROR

        if parsed_args.command == "pending":
            return asyncio.run(check_pending_async(settings, parsed_args.invoice, tenant_id))

        if parsed_args.command == "pay":
            overrides = {}
            if parsed_args.countdown is not None:
                overrides["countdown_seconds"] = parsed_args.countdown
            if parsed_args.poll_interval is not None:
                overrides["poll_interval_seconds"] = parsed_args.poll_interval
            if overrides:
                settings = settings.model_copy(update=overrides)
            return asyncio.run(pay_async(
                settings,
                parsed_args.invoice,
                tenant_id,
                simulate=parsed_args.simulate,
                amount=parsed_args.amount,
                open_browser=not parsed_args.no_browser,
            ))
    except PaymentError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        return EXIT_ERROR
    except (OSError, ValueError) as e:
        logger.error(str(e))
        return EXIT_ERROR

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
