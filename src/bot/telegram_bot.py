"""
Broadcast Bot — Telegram Bot.

Telegram is the only interface. Every update is recorded in the
user-tracking store (that is what "all users" means for a broadcast), and
administrators get three commands to manage scheduled broadcasts:

    /schedule <time> [<audience>] <message>
    /cancel_schedule <task_id>
    /list_scheduled [all]

plus /stats for audience numbers. Users link a wallet address with /connect
and unlink it with /disconnect; that flag is what the -active and
-inactive audiences select on.

Security-first: admin commands silently ignore everyone else.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    TypeHandler,
)

from src.config import settings
from src.core.errors import ScheduleInputError

if TYPE_CHECKING:
    from src.core.access import AdminPolicy
    from src.core.scheduler import BroadcastScheduler
    from src.data.db import TrackedUserDB
    from src.data.models import ScheduledTask
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

CONFIRM_PREVIEW_CHARS = 200
LIST_PREVIEW_CHARS = 50

SCHEDULE_USAGE = (
    "⚠️ Incorrect format\n\n"
    "Usage:\n"
    "/schedule <time> <message> — send to all users\n"
    "/schedule <time> -active <message> — users with a wallet connected\n"
    "/schedule <time> -inactive <message> — users without a wallet\n"
    "/schedule <time> <id>[,<id>...] <message> — specific users\n\n"
    "Time: 10s, 5m, 2h, or an ISO datetime (2026-05-15T20:00)\n\n"
    "Examples:\n"
    "/schedule 30s Hello everyone!\n"
    "/schedule 5m -active Remember to check your wallet balance\n"
    "/schedule 1h -inactive Please connect your wallet\n"
    "/schedule 10s 123456789 This is a private message"
)

# Raw form (workchain:hex) or the 48-character user-friendly form
WALLET_ADDRESS_RE = re.compile(r"^(-?\d+:[0-9a-fA-F]{64}|[A-Za-z0-9_+/=-]{48})$")

CONNECT_USAGE = (
    "Usage: /connect <wallet_address>\n\n"
    "Example:\n"
    "/connect EQD4FPq-PRDieyQKkizFTRtSDyucUIqrj0v_zXJmqaDp6_0t"
)


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def admin_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores admin commands from everyone else.

    Does NOT send any response; non-admins must not learn these commands
    exist.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        admins: AdminPolicy = context.bot_data["admins"]
        user = update.effective_user
        if user is None or not admins.is_admin(user.id):
            uid = user.id if user else "unknown"
            logger.warning("Non-admin %s tried %s", uid, func.__name__)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _command_args(text: str | None) -> str:
    """Everything after the command word, with the message's line breaks intact."""
    if not text:
        return ""
    parts = text.split(None, 1)
    return parts[1] if len(parts) > 1 else ""


def _timezone() -> ZoneInfo:
    return ZoneInfo(settings.TIMEZONE)


def _format_time(epoch_ms: int) -> str:
    tz = _timezone()
    return datetime.fromtimestamp(epoch_ms / 1000, tz).strftime("%Y-%m-%d %H:%M:%S") + f" ({tz.key})"


def _format_task_line(task: ScheduledTask) -> str:
    lines = [
        f"🆔 {task.id}",
        f"📅 {_format_time(task.scheduled_time)}",
        f"📢 {task.audience.describe()}",
        f"📌 {task.status.value}",
    ]
    if task.error_summary:
        lines.append(f"⚠️ {task.error_summary}")
    lines.append(f"💬 {task.preview(LIST_PREVIEW_CHARS)}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# User tracking, runs before every other handler
# ---------------------------------------------------------------------------


async def track_interaction(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Record the chat behind any update as a tracked user."""
    chat = update.effective_chat
    if chat is None:
        return
    user = update.effective_user
    try:
        context.bot_data["user_db"].track_interaction(
            chat.id,
            display_name=user.first_name if user else None,
            username=user.username if user else None,
        )
    except Exception as exc:
        logger.error("Failed to track interaction for chat %d: %s", chat.id, exc)


# ---------------------------------------------------------------------------
# Public commands
# ---------------------------------------------------------------------------


async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    name = update.effective_user.first_name if update.effective_user else "there"
    await update.message.reply_text(
        f"Hi {name}! 👋\n\n"
        "You're subscribed to announcements from this bot. "
        "Send /help to see what I can do."
    )


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    text = (
        "*Commands*\n"
        "/start — subscribe to announcements\n"
        "/connect — link your TON wallet address\n"
        "/disconnect — unlink your wallet\n"
        "/my\\_wallet — show the linked wallet\n"
        "/help — show this message"
    )
    admins: AdminPolicy = context.bot_data["admins"]
    user = update.effective_user
    if user is not None and admins.is_admin(user.id):
        text += (
            "\n\n*Admin*\n"
            "/schedule — schedule a broadcast\n"
            "/cancel\\_schedule — cancel a pending broadcast\n"
            "/list\\_scheduled — pending broadcasts (`all` for history)\n"
            "/stats — audience statistics"
        )
    await update.message.reply_text(text, parse_mode="Markdown")


# ---------------------------------------------------------------------------
# Wallet commands: feed the connected / inactive audiences
# ---------------------------------------------------------------------------


async def cmd_connect(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /connect <wallet_address>."""
    user_db: TrackedUserDB = context.bot_data["user_db"]
    chat_id = update.effective_chat.id
    args = context.args or []

    current = user_db.get_user(chat_id)
    if current is not None and current.wallet_connected:
        await update.message.reply_text(
            "You have already connected a wallet\n"
            f"Your address: {current.wallet_address}\n\n"
            "Disconnect wallet first to connect a new one"
        )
        return

    if len(args) != 1 or not WALLET_ADDRESS_RE.match(args[0]):
        await update.message.reply_text(CONNECT_USAGE)
        return

    user_db.mark_wallet_connected(chat_id, args[0])
    await update.message.reply_text(
        f"✅ Wallet connected successfully\nYour address: {args[0]}"
    )


async def cmd_disconnect(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user_db: TrackedUserDB = context.bot_data["user_db"]
    if user_db.mark_wallet_disconnected(update.effective_chat.id):
        await update.message.reply_text("Wallet disconnected")
    else:
        await update.message.reply_text("No wallet connected")


async def cmd_my_wallet(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user_db: TrackedUserDB = context.bot_data["user_db"]
    user = user_db.get_user(update.effective_chat.id)
    if user is None or not user.wallet_connected:
        await update.message.reply_text("No wallet connected. Use /connect to connect a wallet.")
        return
    await update.message.reply_text(f"Connected wallet: {user.wallet_address}")


# ---------------------------------------------------------------------------
# Admin commands: broadcasts
# ---------------------------------------------------------------------------


@admin_only
async def cmd_schedule(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /schedule <time> [<audience>] <message>."""
    from src.core.parser import parse_schedule_command

    scheduler: BroadcastScheduler = context.bot_data["scheduler"]
    args_text = _command_args(update.message.text)
    if not args_text.strip():
        await update.message.reply_text(SCHEDULE_USAGE)
        return

    try:
        request = parse_schedule_command(args_text, now=scheduler.now(), tz=_timezone())
        task = await scheduler.schedule(
            content=request.content,
            scheduled_time=request.scheduled_time,
            audience=request.audience,
            created_by=update.effective_user.id,
        )
    except ScheduleInputError as exc:
        logger.info("Rejected /schedule from %d: %s", update.effective_user.id, exc)
        await update.message.reply_text(f"⚠️ {exc}")
        return

    await update.message.reply_text(
        "✅ Message scheduled\n\n"
        f"⏰ Execution time: {_format_time(task.scheduled_time)}\n"
        f"🆔 Task ID: {task.id}\n"
        f"📧 Target: {task.audience.describe()}\n\n"
        f"📝 Message preview:\n----\n{task.preview(CONFIRM_PREVIEW_CHARS)}"
    )


@admin_only
async def cmd_cancel_schedule(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cancel_schedule <task_id>."""
    scheduler: BroadcastScheduler = context.bot_data["scheduler"]
    args = context.args or []
    if not args:
        await update.message.reply_text("Usage: /cancel_schedule <task_id>")
        return

    task_id = args[0].strip()
    if await scheduler.cancel(task_id):
        await update.message.reply_text(f"✅ Scheduled message {task_id} has been cancelled.")
    else:
        await update.message.reply_text(f"❌ Message with ID {task_id} not found or already sent.")


@admin_only
async def cmd_list_scheduled(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /list_scheduled [all]."""
    scheduler: BroadcastScheduler = context.bot_data["scheduler"]
    args = context.args or []
    include_history = bool(args) and args[0].lower() == "all"

    tasks = scheduler.list_tasks(include_history=include_history)
    if not tasks:
        if include_history:
            await update.message.reply_text("No scheduled messages found.")
        else:
            await update.message.reply_text("No pending scheduled messages found.")
        return

    title = "Scheduled messages" if include_history else "Pending scheduled messages"
    blocks = [f"📅 {title} ({len(tasks)})"]
    blocks.extend(_format_task_line(t) for t in tasks)
    blocks.append("To cancel a message, use /cancel_schedule <task_id>")
    await update.message.reply_text("\n\n".join(blocks))


@admin_only
async def cmd_stats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stats — audience counts for picking a broadcast target."""
    from src.core.analytics import collect_stats, format_stats

    scheduler: BroadcastScheduler = context.bot_data["scheduler"]
    users = context.bot_data["user_db"].list_users()
    stats = collect_stats(users, len(scheduler.list_tasks()), scheduler.now())
    await update.message.reply_text(format_stats(stats), parse_mode="Markdown")


# ---------------------------------------------------------------------------
# Error boundary
# ---------------------------------------------------------------------------


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Log handler and background-task crashes, apologise to the user, alert the admins.

    Background failures (sweep, resume) arrive without an Update; admins still
    get the report.
    """
    logger.error("Exception while handling update %s", update, exc_info=context.error)

    chat_id = None
    command = None
    if isinstance(update, Update):
        if update.effective_chat is not None:
            chat_id = update.effective_chat.id
        if update.effective_message is not None:
            command = update.effective_message.text

    if chat_id is not None:
        try:
            await context.bot.send_message(
                chat_id=chat_id,
                text="⚠️ There was a problem processing your request. Please try again later.",
            )
        except Exception as exc:
            logger.error("Failed to send error notice to %d: %s", chat_id, exc)

    error = context.error
    report = (
        "🔴 Bot error report\n\n"
        f"Error type: {type(error).__name__ if error else 'Unknown'}\n"
        f"Message: {error}\n"
        f"Chat ID: {chat_id if chat_id is not None else 'background task'}\n"
        f"Command: {command or 'Unknown'}\n"
        f"Time: {datetime.now(_timezone()).isoformat(timespec='seconds')}"
    )
    admins: AdminPolicy = context.bot_data["admins"]
    for admin_id in admins.admin_ids:
        try:
            await context.bot.send_message(chat_id=admin_id, text=report)
        except Exception as exc:
            logger.error("Failed to notify admin %d about error: %s", admin_id, exc)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    notifier: NotificationPort | None = None,
    db_path: str | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
        db_path: SQLite file. Defaults to settings.DATABASE_PATH.
    """
    from src.core.access import AdminPolicy
    from src.core.dispatcher import BroadcastDispatcher
    from src.core.scheduler import BroadcastScheduler
    from src.data.db import BroadcastDB, TrackedUserDB

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).post_init(_post_init).build()

    if notifier is None:
        from src.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    broadcast_db = BroadcastDB(db_path)
    user_db = TrackedUserDB(db_path)
    dispatcher = BroadcastDispatcher(
        broadcast_db,
        notifier,
        send_delay=settings.SEND_DELAY_MS / 1000,
        timeout=settings.DISPATCH_TIMEOUT_SECONDS or None,
    )
    scheduler = BroadcastScheduler(broadcast_db, user_db, dispatcher)

    # Collaborators live in bot_data for handler access
    app.bot_data["admins"] = AdminPolicy(settings.ADMIN_IDS)
    app.bot_data["user_db"] = user_db
    app.bot_data["scheduler"] = scheduler
    app.bot_data["notifier"] = notifier

    # Track every update before any command runs
    app.add_handler(TypeHandler(Update, track_interaction), group=-1)

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("connect", cmd_connect))
    app.add_handler(CommandHandler("disconnect", cmd_disconnect))
    app.add_handler(CommandHandler("my_wallet", cmd_my_wallet))
    app.add_handler(CommandHandler("schedule", cmd_schedule))
    app.add_handler(CommandHandler("cancel_schedule", cmd_cancel_schedule))
    app.add_handler(CommandHandler("list_scheduled", cmd_list_scheduled))
    app.add_handler(CommandHandler("stats", cmd_stats))

    app.add_error_handler(on_error)

    _setup_broadcast_sweep(app, scheduler)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


async def _post_init(app: Application) -> None:
    """Resume broadcasts interrupted by the last shutdown, before the first sweep."""
    scheduler: BroadcastScheduler = app.bot_data["scheduler"]
    interrupted = scheduler.interrupted_tasks()
    if interrupted:
        app.create_task(scheduler.resume(interrupted))


def _setup_broadcast_sweep(app: Application, scheduler: BroadcastScheduler) -> None:
    """Register the periodic sweep that fires due broadcasts."""
    interval = max(1, settings.SWEEP_INTERVAL_SECONDS)

    async def _sweep_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        # Run detached so a long dispatch never delays the next sweep
        context.application.create_task(scheduler.sweep())

    app.job_queue.run_repeating(
        _sweep_job_callback,
        interval=interval,
        first=interval,
        name="broadcast_sweep",
    )

    logger.info("Broadcast sweep scheduled every %d seconds", interval)


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # httpx logs every Telegram API request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logger.info("Starting broadcast bot...")
    app = build_app()
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
