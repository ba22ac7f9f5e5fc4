"""HTTP surface: checkout, Stripe webhook, invites, broadcast and Telegram updates."""

import asyncio
import hmac
import json
import logging
from pathlib import Path
from typing import Optional

import stripe
from aiohttp import web

from membership.broadcast.attachments import LocalAttachmentStore, load_attachment
from membership.broadcast.fanout import Broadcaster
from membership.channels.base import Attachment
from membership.channels.registry import ChannelRegistry
from membership.channels.telegram import parse_private_message
from membership.config.settings import get_config
from membership.db import invites
from membership.db.models import Channel
from membership.db.pool import get_pool
from membership.errors import (
    ArtifactIssuanceError,
    MembershipError,
    ValidationError,
    render_failures,
)
from membership.linking.handshake import handle_direct_message
from membership.payments.checkout import CheckoutRequest, create_checkout_url
from membership.payments.webhooks import handle_webhook
from membership.subscriptions.issuance import reissue_invites
from membership.validation import require_email

logger = logging.getLogger(__name__)

# Multipart framing on top of the attachment itself
UPLOAD_OVERHEAD_BYTES = 64 * 1024


def error_response(error: MembershipError) -> web.Response:
    return web.json_response({"error": str(error)}, status=error.http_status)


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


async def checkout_session(request: web.Request) -> web.Response:
    """Handle POST /checkout-session."""
    try:
        checkout = CheckoutRequest.from_payload(await _json_body(request))
    except ValidationError as e:
        return error_response(e)

    try:
        url = await create_checkout_url(checkout)
    except (stripe.StripeError, ValueError) as e:
        logger.error(f"Error creating checkout session for {checkout.email}: {e}")
        return web.json_response(
            {"error": f"Failed to create checkout session: {e}"}, status=500
        )

    return web.json_response({"url": url})


async def payment_webhook(request: web.Request) -> web.Response:
    """Handle POST /payment-webhook."""
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header")
        return web.json_response({"error": "Missing signature"}, status=400)

    payload = await request.read()
    return await handle_webhook(payload, sig_header, request.app["channels"])


async def generate_invite(request: web.Request) -> web.Response:
    """Handle POST /generate-invite: re-issue invites for an active subscriber."""
    try:
        body = await _json_body(request)
        result = await reissue_invites(body.get("email"), request.app["channels"])
    except ArtifactIssuanceError as e:
        return web.json_response(
            {"error": str(e), "failures": [f.to_dict() for f in e.failures]},
            status=e.http_status,
        )
    except MembershipError as e:
        return error_response(e)

    response = result.artifacts.to_response()
    if result.failures:
        response["errors"] = [f.to_dict() for f in result.failures]
    return web.json_response(response)


async def invite_link(request: web.Request) -> web.Response:
    """Handle GET /invite-link?email=..."""
    try:
        email = require_email(request.query.get("email"))
    except ValidationError as e:
        return error_response(e)

    pool = await get_pool()
    async with pool.acquire() as conn:
        artifacts = await invites.get_invites(conn, email)

    if artifacts is None or artifacts.is_empty():
        return web.json_response({"error": "Invite links not found"}, status=404)
    return web.json_response(artifacts.to_response())


async def _read_broadcast(request: web.Request) -> tuple[str, Optional[Attachment]]:
    """Read the message and optional file from a JSON or multipart body."""
    if request.content_type.startswith("multipart/"):
        form = await request.post()
        message = form.get("message") or ""
        upload = form.get("file")
        attachment = None
        if isinstance(upload, web.FileField):
            data = await asyncio.to_thread(upload.file.read)
            attachment = load_attachment(
                upload.filename or "attachment",
                data,
                upload.content_type,
                get_config().broadcast_max_upload_bytes,
            )
        if not isinstance(message, str):
            raise ValidationError("message must be text")
        return message.strip(), attachment

    body = await _json_body(request)
    message = body.get("message") or ""
    if not isinstance(message, str):
        raise ValidationError("message must be text")
    return message.strip(), None


async def broadcast(request: web.Request) -> web.Response:
    """Handle POST /broadcast."""
    try:
        message, attachment = await _read_broadcast(request)
    except ValidationError as e:
        return error_response(e)

    if not message and attachment is None:
        return web.json_response({"error": "Message or file is required"}, status=400)

    broadcaster: Broadcaster = request.app["broadcaster"]
    report = await broadcaster.broadcast(message, attachment)

    failures = [f.to_dict() for f in report.failures]
    if not report.success:
        return web.json_response(
            {
                "error": f"Failed to broadcast message: {render_failures(report.failures)}",
                "failures": failures,
            },
            status=500,
        )

    response = {
        "success": True,
        "message": report.summary(),
        "delivered": {channel.value: count for channel, count in report.delivered.items()},
    }
    if report.partial:
        response["warnings"] = failures
    return web.json_response(response)


async def telegram_webhook(request: web.Request) -> web.Response:
    """Handle POST /telegram-webhook: Bot API updates carrying direct messages."""
    secret = get_config().telegram_webhook_secret.get_secret_value()
    if secret:
        supplied = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
        if not hmac.compare_digest(supplied, secret):
            logger.warning("Telegram update with bad secret token rejected")
            return web.json_response({"error": "Unauthorized"}, status=401)

    try:
        update = await request.json()
    except json.JSONDecodeError:
        return web.json_response({"error": "Invalid update"}, status=400)

    parsed = parse_private_message(update) if isinstance(update, dict) else None
    if parsed is None:
        return web.json_response({"ok": True})

    handle, text = parsed
    reply = await handle_direct_message(Channel.TELEGRAM, handle, text)

    # Always acknowledge; a failed reply must not make Telegram redeliver
    try:
        await request.app["channels"][Channel.TELEGRAM].send_text(handle, reply.text)
    except Exception as e:
        logger.error(f"Failed to reply to Telegram user {handle}: {e}")

    return web.json_response({"ok": True, "outcome": reply.outcome.value})


async def health(request: web.Request) -> web.Response:
    return web.json_response(
        {"status": "ok", "channels": request.app["channels"].readiness()}
    )


async def create_app(
    channels: ChannelRegistry,
    attachment_store: Optional[LocalAttachmentStore] = None,
) -> web.Application:
    """Create aiohttp application with all routes.

    Args:
        channels: Channel adapters shared by every handler
        attachment_store: Where broadcast files are published for link-only
            channels; its directory is served under /media/

    Returns:
        Configured aiohttp Application
    """
    config = get_config()
    app = web.Application(
        client_max_size=config.broadcast_max_upload_bytes + UPLOAD_OVERHEAD_BYTES
    )
    app["channels"] = channels
    app["broadcaster"] = Broadcaster(channels, attachment_store)

    app.router.add_post("/checkout-session", checkout_session)
    app.router.add_post("/payment-webhook", payment_webhook)
    app.router.add_post("/generate-invite", generate_invite)
    app.router.add_get("/invite-link", invite_link)
    app.router.add_post("/broadcast", broadcast)
    app.router.add_post("/telegram-webhook", telegram_webhook)
    app.router.add_get("/health", health)

    if attachment_store is not None:
        Path(attachment_store.media_dir).mkdir(parents=True, exist_ok=True)
        app.router.add_static("/media", attachment_store.media_dir)

    return app


async def run_server(
    channels: ChannelRegistry,
    attachment_store: Optional[LocalAttachmentStore],
    shutdown_event: asyncio.Event,
) -> None:
    """Serve the HTTP API until the shutdown event is set."""
    config = get_config()
    app = await create_app(channels, attachment_store)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.server_host, config.server_port)
    await site.start()

    logger.info(f"HTTP server listening on {config.server_host}:{config.server_port}")

    await shutdown_event.wait()

    logger.info("Shutting down HTTP server...")
    await runner.cleanup()
