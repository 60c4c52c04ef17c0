"""
Tenant payment walkthrough using the simulator gateway. The invoice is built
locally so no portal backend is needed; status checks are answered by the
simulator, which reports "pending" twice and then "settlement".
"""
import asyncio
import logging

from tenant_payments import BackendClient, Invoice, PaymentMethod, PaymentSession, Settings
from tenant_payments.gateway import SimulatorConfig, SimulatorGatewayClient, SimulatorScenario
from tenant_payments.window import ClientSideOpener, RedirectWindowController


async def run():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    settings = Settings(tenant_id=7, poll_interval_seconds=0.5, countdown_seconds=30)
    gateway = SimulatorGatewayClient(SimulatorConfig(scenario=SimulatorScenario.SUCCESS, pending_checks=2))
    done = asyncio.Event()

    async with BackendClient.from_settings(settings) as backend:
        session = await PaymentSession.create(
            invoice_id=42,
            method=PaymentMethod.ONLINE,
            backend=backend,
            gateway=gateway,
            settings=settings,
            invoice=Invoice(invoice_id=42, booking_id=9, amount=150000),
            window=RedirectWindowController(ClientSideOpener()),
        )
        async with session:
            session.subscribe(lambda snapshot: snapshot.is_terminal and done.set())
            snapshot = await session.begin()
            print("Pay at:", snapshot.redirect_url)
            await done.wait()
            print("Final:", session.snapshot().model_dump_json(by_alias=True, exclude={"invoice"}))
            for notice in session.notices:
                print(f"[{notice.level.value}] {notice.title}: {notice.message}")


if __name__ == "__main__":
    asyncio.run(run())
