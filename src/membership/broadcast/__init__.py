"""Fan-out delivery of notifications and operator broadcasts."""

from membership.broadcast.attachments import LocalAttachmentStore, load_attachment
from membership.broadcast.fanout import BroadcastReport, Broadcaster, send_welcome

__all__ = [
    "BroadcastReport",
    "Broadcaster",
    "LocalAttachmentStore",
    "load_attachment",
    "send_welcome",
]
