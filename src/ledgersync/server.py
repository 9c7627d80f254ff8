# ABOUTME: MCP server entry point for ledgersync
# ABOUTME: Configures FastMCP, owns the long-lived ledger sessions, and registers tools

import asyncio
import logging

from fastmcp import FastMCP

from ledgersync.config import Settings
from ledgersync.ledger import Ledger, make_scope
from ledgersync.rest_store import RestLedgerStore
from ledgersync.signals import FileSignalBus
from ledgersync.snapshot import SnapshotStore
from ledgersync.tools.obligations import register_obligation_tools
from ledgersync.tools.payments import register_payment_tools
from ledgersync.types import ObligationKind

logger = logging.getLogger(__name__)

# One open session per ledger kind, shared by every tool call
_ledgers: dict[ObligationKind, Ledger] = {}
_bus: FileSignalBus | None = None
_ledger_lock = asyncio.Lock()


async def get_ledger(kind: ObligationKind | str) -> Ledger:
    """
    Get or open the ledger session for a kind.

    The first call per kind signs in, runs the initial fetch, and starts
    watching the store and the device's signal files.
    """
    global _bus

    kind = ObligationKind(kind)
    async with _ledger_lock:
        ledger = _ledgers.get(kind)
        if ledger is not None:
            return ledger

        settings = Settings.from_env()
        if _bus is None:
            _bus = FileSignalBus(settings.signal_dir, poll_interval=settings.signal_poll_interval)
            _bus.start()

        logger.info(f"Opening {kind.value} ledger session")
        ledger = Ledger(
            kind,
            RestLedgerStore(settings),
            scope=make_scope(kind, branch=settings.branch),
            bus=_bus,
            snapshots=SnapshotStore(settings.snapshot_dir),
            require_branch=settings.require_branch,
            default_user=settings.user_name,
        )
        await ledger.open()
        _ledgers[kind] = ledger
        return ledger


async def close_ledgers() -> None:
    """Close every open ledger session and stop the signal poller."""
    global _bus

    async with _ledger_lock:
        for ledger in _ledgers.values():
            await ledger.close()
        _ledgers.clear()
        if _bus is not None:
            await _bus.close()
            _bus = None


def create_server() -> FastMCP:
    """
    Create and configure the ledgersync MCP server.

    Returns:
        Configured FastMCP server instance
    """
    mcp = FastMCP(
        name="ledgersync",
        instructions="""
ledgersync tracks customer credits (goods or services handed over now, paid
later) and deposits (money taken in advance against a future event), each
with a list of payments. You can:

- List credits or deposits for the default window or a given month
- See paid, remaining, and status (Open, Unpaid, Paid) per obligation
- Create, edit, and delete obligations
- Record, correct, and delete payments with a payment method

Amounts are whole currency units; fractional input is rounded half up.
Overpayment is accepted and reported as remaining 0.

Saving an obligation requires a branch unless LEDGER_REQUIRE_BRANCH is off.
Month views of deposits include older deposits that are still unpaid.
Use refresh_ledger() after changes made outside this server if results
look out of date; "stale": true means the last refresh failed and the data
shown is the last known good copy.
""",
    )

    register_obligation_tools(mcp, get_ledger)
    register_payment_tools(mcp, get_ledger)

    return mcp


def main() -> None:
    """Run the MCP server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    server = create_server()
    server.run()


if __name__ == "__main__":
    main()
