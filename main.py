"""
Broadcast Bot — Entry Point.

Single entry point: `python main.py` starts the Telegram bot.
Logging is configured in src.bot.telegram_bot.main, which the
`broadcast-bot` console script also calls.
"""

from src.bot.telegram_bot import main

if __name__ == "__main__":
    main()
