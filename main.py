# main.py
import argparse
import asyncio
import signal
import sys
import questionary

from dumphedge.alerts import AlertManager
from dumphedge.config import BotConfig, ConfigError, apply_updates, load_config
from dumphedge.engine import TradingEngine
from dumphedge.event_bus import EventBus
from dumphedge.execution import ExecutionService
from dumphedge.logger import AsyncAuditLogger, setup_console_logger
from dumphedge.price_buffer import PriceBuffer
from dumphedge.round_tracker import RoundTracker
from dumphedge.state_machine import TRANSITION_LOG_HEADER
from dumphedge.store import TradeStore
from dumphedge.websocket_engine import MarketFeed

# --- CLI HELPERS ---

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Dump & hedge trader for UP/DOWN rounds")
    parser.add_argument("--config", default="config.yaml", help="Path to the YAML config")
    parser.add_argument("--dry-run", action="store_true", help="Simulate fills, never send orders")
    parser.add_argument("--auto", action="store_true", help="Enable auto mode without prompting")
    parser.add_argument("--debug", action="store_true", help="Verbose console logging")
    return parser.parse_args(argv)

def startup_selection(config: BotConfig, args) -> BotConfig:
    """Interactive CLI to confirm mode before anything connects."""
    print("\n🎯 DUMP & HEDGE ROUND TRADER \n")
    changes = {}
    if args.dry_run:
        changes["dry_run"] = True
    if args.debug:
        changes["log_level"] = "DEBUG"

    if args.auto:
        changes["auto_mode"] = True
    elif not config.system.auto_mode:
        changes["auto_mode"] = bool(questionary.confirm("Enable auto mode now?", default=True).ask())

    live = not (changes.get("dry_run") or config.system.dry_run or config.system.read_only)
    if live:
        ok = questionary.confirm(
            f"LIVE trading {config.strategy.shares} shares per leg on {config.rounds.asset.upper()}. Continue?",
            default=False,
        ).ask()
        if not ok:
            print("Aborted.")
            sys.exit()
    return apply_updates(config, **changes) if changes else config

# --- MAIN CONTROLLER ---

class DumpHedgeBot:
    def __init__(self, config: BotConfig):
        self.config = config
        self.logger = setup_console_logger("DumpHedge", config.system.log_level)

        self.audit_log = AsyncAuditLogger(config.audit.trade_log, header=TRANSITION_LOG_HEADER)
        self.store = TradeStore(config.audit.cycle_store, self.logger)
        self.bus = EventBus(self.logger)
        self.buffer = PriceBuffer(config.strategy.buffer_capacity)
        self.rounds = RoundTracker(config, self.bus, self.logger)
        self.feed = MarketFeed(config, self.buffer, self.bus, self.rounds, self.logger)
        self.executor = ExecutionService(config, self.logger)
        self.alerts = AlertManager(config, self.logger, bus=self.bus)
        self.engine = TradingEngine(
            config, self.bus, self.buffer, self.rounds, self.executor, self.alerts, self.logger,
            feed=self.feed, store=self.store, audit_log=self.audit_log,
        )
        self._stop = asyncio.Event()

    def request_stop(self):
        self._stop.set()

    async def run(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                pass

        try:
            print("Initializing...")
            await self.audit_log.start()
            await self.store.start()
            stats = await self.store.stats()
            self.logger.info(f"📒 {stats['cycles']} cycles on record | total profit ${stats['total_profit']:.2f}")

            if not await self.executor.initialize():
                print("❌ Execution client failed. Check PK / BROWSER_ADDRESS.")
                return

            mode = "READ-ONLY" if self.config.system.read_only else "DRY RUN" if self.config.system.dry_run else "LIVE"
            self.logger.info(f"Mode: {mode} | channels: {', '.join(self.alerts.channels)}")

            await self.engine.start()
            await self.rounds.start()
            await self.feed.start()

            while not self._stop.is_set():
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=30)
                except asyncio.TimeoutError:
                    self.logger.info(f"📊 {self.engine.status()}")
        finally:
            print("Shutting down resources...")
            await self.engine.stop()
            await self.feed.shutdown()
            await self.rounds.shutdown()
            await self.bus.drain()
            await self.alerts.close()
            await self.store.stop()
            await self.audit_log.stop()

if __name__ == "__main__":
    args = parse_args()
    try:
        config = load_config(args.config)
        config = startup_selection(config, args)
    except ConfigError as e:
        print(f"❌ Invalid configuration: {e}")
        sys.exit(1)

    bot = DumpHedgeBot(config)
    try:
        import uvloop
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
    except ImportError:
        pass
    try:
        asyncio.run(bot.run())
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
        sys.exit()
