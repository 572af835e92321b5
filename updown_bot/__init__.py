"""
Polymarket Up/Down Trading Bot

Trades the hourly crypto "Up or Down" markets:

- Entry point: python -m updown_bot.main (or the updown-bot script)
- Classifies each market from its two leg prices (resolved, momentum,
  arbitrage, grey)
- Buys both legs when their combined price is below the arbitrage
  threshold, or the leading leg plus a small hedge in momentum
- Merges matched UP+DOWN pairs back to USDC on-chain near close
- SIMULATION_MODE (default) fills orders locally against live prices

Key Modules:
- updown_bot.strategy: Price classifier and decision engine
- updown_bot.inventory: Persistent position ledger
- updown_bot.execution: Order execution, merges and simulation stand-ins
- updown_bot.clients: Gamma, CLOB, WebSocket and Polygon clients
"""

__version__ = "0.1.0"
