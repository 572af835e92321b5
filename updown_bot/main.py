"""
Main entry point for the Up/Down trading bot.
Orchestrates all components and runs the main event loop.
"""

import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

# Use uvloop for better performance on Linux
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available (Windows)

from .config import load_config, Config
from .clients.clob_client import CLOBClient
from .clients.gamma_client import GammaClient
from .clients.polygon_client import PolygonClient
from .clients.price_feed import PriceFeed
from .clients.websocket_client import MarketWebSocketClient, StreamClient, UserWebSocketClient
from .execution.executor import ExecutionCoordinator
from .execution.simulation import SimulatedOrderClient, SimulatedSettlement
from .inventory import Inventory
from .models import ActionKind, Market
from .strategy.fsm import DecisionEngine
from .utils.logger import setup_logging, get_logger, TradeLogger

logger = get_logger("main")
trade_logger = TradeLogger()

STATS_INTERVAL_SECONDS = 60


class UpDownBot:
    """
    Main bot orchestrator.

    Coordinates:
    - Market discovery and price streams
    - Per-market classify -> decide -> execute ticks
    - Ledger reconciliation and fill notifications
    - Graceful shutdown
    """

    def __init__(self, config: Config):
        """Initialize bot with configuration."""
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._closed = False

        simulated = config.risk.simulation_mode
        timing = config.timing

        self.inventory = Inventory(
            config.inventory_file,
            reconcile_interval_seconds=timing.reconcile_interval_seconds
        )
        self.engine = DecisionEngine(config.strategy)

        self.gamma_client = GammaClient(
            assets=config.risk.assets,
            max_market_age_hours=timing.max_market_age_hours,
            base_url=config.polymarket.gamma_url,
            timeout=timing.http_timeout_seconds
        )
        self.market_ws = MarketWebSocketClient(url=config.polymarket.market_ws_url)
        self.price_feed = PriceFeed(
            stream=self.market_ws,
            base_url=config.polymarket.clob_url,
            timeout=timing.http_timeout_seconds,
            max_age=timing.price_max_age_seconds
        )

        self.clob_client: Optional[CLOBClient] = None
        self.polygon_client: Optional[PolygonClient] = None
        self.user_ws: Optional[UserWebSocketClient] = None

        if simulated:
            order_client = SimulatedOrderClient()
            settlement = SimulatedSettlement(self.inventory)
        else:
            self.clob_client = CLOBClient(
                private_key=config.polymarket.private_key,
                funder_address=config.polymarket.funder_address,
                signature_type=config.polymarket.signature_type,
                api_key=config.polymarket.api_key,
                api_secret=config.polymarket.api_secret,
                api_passphrase=config.polymarket.api_passphrase,
                host=config.polymarket.clob_url,
                chain_id=config.wallet.chain_id,
                timeout=timing.order_timeout_seconds
            )
            self.polygon_client = PolygonClient(
                rpc_url=config.wallet.polygon_rpc_url,
                merge_private_key=config.wallet.merge_private_key,
                safe_address=config.polymarket.funder_address,
                chain_id=config.wallet.chain_id,
                receipt_timeout=timing.merge_timeout_seconds
            )
            order_client = self.clob_client
            settlement = self.polygon_client

        self.executor = ExecutionCoordinator(
            order_client=order_client,
            settlement=settlement,
            inventory=self.inventory,
            trade_source=self.clob_client,
            simulated=simulated,
            limit_orders=config.risk.limit_orders,
            limit_fill_timeout=timing.order_timeout_seconds,
            min_merge_pairs=config.strategy.min_merge_pairs
        )

        self._markets: dict[str, Market] = {}

        # Stats
        self._ticks = 0
        self._tick_errors = 0

    async def initialize(self) -> None:
        """Initialize all components."""
        mode = "SIMULATION" if self.config.risk.simulation_mode else "LIVE"
        logger.info(f"Initializing Up/Down bot ({mode})", extra={"assets": self.config.risk.assets})

        await self.gamma_client.initialize()
        await self.price_feed.initialize()

        if self.clob_client:
            await self.clob_client.initialize()

            creds = self.clob_client.creds
            if creds:
                self.user_ws = UserWebSocketClient(
                    api_key=creds.api_key,
                    api_secret=creds.api_secret,
                    api_passphrase=creds.api_passphrase,
                    on_fill=self.executor.handle_fill,
                    url=self.config.polymarket.user_ws_url
                )

        if self.polygon_client:
            await self.polygon_client.initialize()
            if not self.polygon_client.is_ready():
                logger.warning("Merges will be skipped; redeem pairs manually")

        if self.clob_client:
            result = await self.inventory.reconcile_from_trade_history(self.clob_client, force=True)
            if result.error:
                logger.warning(f"Startup reconciliation failed, using saved ledger: {result.error}")

        logger.info("Bot initialized successfully")

    async def run(self) -> None:
        """Run the main bot loop."""
        self._running = True

        logger.info("Starting Up/Down bot")

        try:
            await self._refresh_markets()

            tasks = [
                self._run_trading_loop(),
                self._run_market_refresh(),
                self._run_stream(self.market_ws, "price"),
                self._run_stats_reporter(),
                self._wait_for_shutdown()
            ]
            if self.user_ws:
                tasks.append(self._run_stream(self.user_ws, "fill"))

            await asyncio.gather(*tasks)

        except Exception as e:
            logger.error(f"Bot error: {e}")
            raise

        finally:
            await self.shutdown()

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_trading_loop(self) -> None:
        """Tick every tracked market once per poll interval."""
        while self._running:
            if self.clob_client:
                # Rate-limited inside the ledger
                await self.inventory.reconcile_from_trade_history(self.clob_client)

            for market in list(self._markets.values()):
                if not self._running:
                    break
                await self.process_market(market)

            await self._sleep(self.config.timing.poll_interval_seconds)

    async def process_market(self, market: Market) -> None:
        """
        One tick for one market: prices -> decision -> execution.

        Failures are logged and confined to this market's tick.
        """
        action = None
        self._ticks += 1

        try:
            prices = await self.price_feed.get_prices(market)
            minutes = market.minutes_to_close()
            pairs = self.inventory.get_redeemable_pairs(market.condition_id)

            if not prices.complete and minutes >= self.config.strategy.resolution_minutes:
                logger.info(
                    f"Skipping tick, a leg is unpriced: UP={prices.up:.3f} DOWN={prices.down:.3f}",
                    extra={"condition_id": market.condition_id}
                )
                return

            action = self.engine.decide(market.condition_id, prices, pairs, minutes)

            excess_leg, excess = self.inventory.get_imbalance(market.condition_id)
            regime = action.regime or self.engine.classify(prices)
            trade_logger.tick(
                market.condition_id,
                regime.value,
                prices.up,
                prices.down,
                action.kind.value,
                action.reason,
                minutes,
                excess_leg.value,
                excess
            )

            if action.kind in (ActionKind.WAIT, ActionKind.SKIP):
                return

            await self.executor.execute_action(market, action, prices)

        except Exception as e:
            self._tick_errors += 1
            logger.error(
                f"Tick failed for {market.slug or market.condition_id}: {e}",
                extra={
                    "condition_id": market.condition_id,
                    "action": action.kind.value if action else None
                }
            )

    async def _refresh_markets(self) -> None:
        """
        Merge the latest discovery result into the tracked market set and
        update stream subscriptions.

        A tracked market missing from the lookup stays tracked until it
        closes, so a failed or partial lookup never drops open positions.
        """
        markets = await self.gamma_client.get_active_markets()
        fresh = {m.condition_id: m for m in markets}
        now = datetime.now(timezone.utc)

        removed = []
        for cid, market in self._markets.items():
            if cid in fresh:
                continue
            if market.minutes_to_close(now) > 0:
                fresh[cid] = market
                logger.debug(
                    f"Keeping {market}, missing from discovery",
                    extra={"condition_id": cid}
                )
            else:
                removed.append(market)

        added = [m for cid, m in fresh.items() if cid not in self._markets]
        self._markets = fresh

        if removed:
            await self.market_ws.unsubscribe(
                [t for m in removed for t in (m.up_token_id, m.down_token_id)]
            )
        if added:
            await self.market_ws.subscribe(
                [t for m in added for t in (m.up_token_id, m.down_token_id)]
            )
            if self.user_ws:
                await self.user_ws.subscribe([m.condition_id for m in added])

        for market in added:
            logger.info(f"Tracking {market}", extra={"condition_id": market.condition_id})

    async def _run_market_refresh(self) -> None:
        """Periodically refresh market data."""
        interval = self.config.timing.market_refresh_minutes * 60

        while self._running:
            await self._sleep(interval)
            if not self._running:
                break

            try:
                await self._refresh_markets()
            except Exception as e:
                logger.error(f"Market refresh error: {e}")

    async def _run_stream(self, client: StreamClient, name: str) -> None:
        """Run a WebSocket stream; the bot keeps going without it."""
        try:
            await client.run()
        except Exception as e:
            logger.error(f"{name} stream stopped: {e}")

    async def _run_stats_reporter(self) -> None:
        """Periodically report statistics."""
        while self._running:
            await self._sleep(STATS_INTERVAL_SECONDS)
            if not self._running:
                break
            self._log_stats()

    async def _wait_for_shutdown(self) -> None:
        """Wait for shutdown signal, then stop the loops and streams."""
        await self._shutdown_event.wait()
        self._running = False

        await self.market_ws.disconnect()
        if self.user_ws:
            await self.user_ws.disconnect()

    def _log_stats(self) -> None:
        """Log current statistics."""
        entries = self.inventory.get_all_entries()

        logger.info(
            "Bot statistics",
            extra={
                "markets_tracked": len(self._markets),
                "engine_markets": self.engine.tracked_markets(),
                "ticks": self._ticks,
                "tick_errors": self._tick_errors,
                "ledger_markets": len(entries),
                "redeemable_pairs": round(sum(e.redeemable_pairs for e in entries), 4),
                "invested_usdc": round(sum(e.total_invested_usdc for e in entries), 2),
                "redeemed_usdc": round(sum(e.total_redeemed_usdc for e in entries), 2),
                "price_stream_hits": self.price_feed.stream_hits,
                "price_rest_fetches": self.price_feed.rest_fetches,
                **self.executor.get_stats()
            }
        )

    async def shutdown(self) -> None:
        """Gracefully shutdown the bot."""
        if self._closed:
            return
        self._closed = True

        logger.info("Shutting down bot")
        self._running = False
        self._shutdown_event.set()

        await self.market_ws.disconnect()
        if self.user_ws:
            await self.user_ws.disconnect()

        # Close HTTP sessions
        await self.gamma_client.close()
        await self.price_feed.close()

        # Log final stats
        self._log_stats()

        logger.info("Bot shutdown complete")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def setup_signal_handlers(bot: UpDownBot) -> None:
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        bot.request_shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    # Set up logging
    setup_logging(
        level=config.logging.log_level,
        json_format=config.logging.json_logging
    )

    logger.info("Starting Up/Down trading bot")

    # Create and run bot
    bot = UpDownBot(config)
    setup_signal_handlers(bot)

    try:
        await bot.initialize()
        await bot.run()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise
    finally:
        await bot.shutdown()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
