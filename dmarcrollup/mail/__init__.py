from dmarcrollup.mail.mailbox_connection import MailboxConnection, MailboxError
from dmarcrollup.mail.imap import IMAPConnection
from dmarcrollup.mail.message import (
    AttachmentPart,
    BodyPart,
    get_report_attachments,
    iter_message_parts,
)

__all__ = [
    "MailboxConnection",
    "MailboxError",
    "IMAPConnection",
    "AttachmentPart",
    "BodyPart",
    "get_report_attachments",
    "iter_message_parts",
]
