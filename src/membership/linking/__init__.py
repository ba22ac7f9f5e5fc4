"""Linking chat identities to subscribers through a direct-message handshake."""

from membership.linking.handshake import LinkOutcome, LinkReply, handle_direct_message, link_subscriber

__all__ = ["LinkOutcome", "LinkReply", "handle_direct_message", "link_subscriber"]
