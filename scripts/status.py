#!/usr/bin/env python3
"""
Status display for the Up/Down trading bot.
Shows the position ledger and the markets the bot would trade right now.

Usage:
    python scripts/status.py              # ledger + active markets
    python scripts/status.py --reconcile  # rebuild ledger from trade history first
"""

import argparse
import asyncio
from datetime import datetime

from updown_bot.clients.clob_client import CLOBClient
from updown_bot.clients.gamma_client import GammaClient
from updown_bot.clients.price_feed import PriceFeed
from updown_bot.config import load_config, Config
from updown_bot.inventory import Inventory
from updown_bot.strategy.classifier import classify_prices


def show_ledger(inventory: Inventory) -> None:
    """Print every ledger entry."""
    print("\n" + "="*60)
    print("📒 POSITION LEDGER")
    print("="*60)

    entries = inventory.get_all_entries()
    if not entries:
        print("\n✨ Ledger is empty.")
        return

    for entry in entries:
        leg, excess = inventory.get_imbalance(entry.condition_id)
        print(f"\n• {entry.condition_id}")
        print(f"   UP: {entry.up_balance:.4f} | DOWN: {entry.down_balance:.4f}")
        print(f"   🔗 Redeemable pairs: {entry.redeemable_pairs:.4f}")
        print(f"   ⚖️  Excess: {excess:.4f} {leg.value}")
        print(f"   💵 Invested: ${entry.total_invested_usdc:.2f} | Redeemed: ${entry.total_redeemed_usdc:.2f}")

    print("\n" + "-"*60)
    print(f"   Markets: {len(entries)}")
    print(f"   Total invested: ${sum(e.total_invested_usdc for e in entries):.2f}")
    print(f"   Total redeemed: ${sum(e.total_redeemed_usdc for e in entries):.2f}")
    print(f"   Open pairs: {sum(e.redeemable_pairs for e in entries):.4f}")


async def reconcile(config: Config, inventory: Inventory) -> None:
    """Force a rebuild of the ledger from the account's trade history."""
    print("\n🔄 Reconciling ledger from trade history...")

    client = CLOBClient(
        private_key=config.polymarket.private_key,
        funder_address=config.polymarket.funder_address,
        signature_type=config.polymarket.signature_type,
        api_key=config.polymarket.api_key,
        api_secret=config.polymarket.api_secret,
        api_passphrase=config.polymarket.api_passphrase,
        host=config.polymarket.clob_url,
        chain_id=config.wallet.chain_id
    )
    await client.initialize()

    result = await inventory.reconcile_from_trade_history(client, force=True)
    if result.error:
        print(f"❌ Reconciliation failed: {result.error}")
    else:
        print(f"✅ Rebuilt {result.markets_updated} markets")


async def show_markets(config: Config) -> None:
    """Print active markets with their current regime."""
    print("\n" + "="*60)
    print("📈 ACTIVE UP/DOWN MARKETS")
    print("="*60)

    gamma = GammaClient(
        assets=config.risk.assets,
        max_market_age_hours=config.timing.max_market_age_hours,
        base_url=config.polymarket.gamma_url
    )
    prices = PriceFeed(base_url=config.polymarket.clob_url)

    try:
        markets = await gamma.get_active_markets()
        if not markets:
            print("\n✨ No open markets found.")
            return

        for market in markets:
            p = await prices.get_prices(market)
            regime = classify_prices(
                p.up,
                p.down,
                config.strategy.arb_threshold,
                config.strategy.momentum_trigger
            )
            print(f"\n• {market.title or market.slug}")
            print(f"   Closes in {market.minutes_to_close():.0f}m | {market.condition_id}")
            print(f"   UP: ${p.up:.3f} + DOWN: ${p.down:.3f} = ${p.spread:.3f} → {regime.value}")
            if not p.complete:
                print("   ⚠️  A leg is unpriced, the bot skips this market")
    finally:
        await gamma.close()
        await prices.close()


async def main():
    """Main status display."""
    parser = argparse.ArgumentParser(description="Up/Down bot status")
    parser.add_argument("--reconcile", action="store_true", help="rebuild the ledger from trade history first")
    parser.add_argument("--no-markets", action="store_true", help="skip the live market scan")
    args = parser.parse_args()

    config = load_config()
    inventory = Inventory(config.inventory_file)

    print("\n" + "="*60)
    print("  UP/DOWN BOT - STATUS")
    print(f"  {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"  Mode: {'SIMULATION' if config.risk.simulation_mode else 'LIVE'} | Ledger: {config.inventory_file}")
    print("="*60)

    if args.reconcile:
        if not config.polymarket.private_key:
            print("❌ PRIVATE_KEY is required to read trade history")
        else:
            await reconcile(config, inventory)

    show_ledger(inventory)

    if not args.no_markets:
        await show_markets(config)

    print("\n" + "="*60)
    print("  STATUS CHECK COMPLETE")
    print("="*60)


if __name__ == "__main__":
    asyncio.run(main())
