# -*- coding: utf-8 -*-

"""Splits raw RFC 822 messages into typed parts"""

from __future__ import annotations

import email
from email.header import decode_header, make_header
from typing import Iterator, List, NamedTuple, Union

from dmarcrollup.log import logger
from dmarcrollup.types import Attachment
from dmarcrollup.utils import is_dmarc_attachment


class AttachmentPart(NamedTuple):
    """A message part that carries a file"""

    filename: str
    content_type: str
    payload: bytes


class BodyPart(NamedTuple):
    """Any other leaf part, such as the text or HTML body"""

    content_type: str


MessagePart = Union[AttachmentPart, BodyPart]


def _decode_filename(filename: str) -> str:
    try:
        return str(make_header(decode_header(filename)))
    except (UnicodeDecodeError, LookupError):
        return filename


def iter_message_parts(message: Union[bytes, str]) -> Iterator[MessagePart]:
    """
    Walks a message and yields each leaf part as an ``AttachmentPart`` or a
    ``BodyPart``

    Args:
        message: A message in RFC 822 format, as bytes or a string

    Yields:
        The leaf parts of the message, in order
    """
    if isinstance(message, (bytes, bytearray)):
        msg = email.message_from_bytes(bytes(message))
    else:
        msg = email.message_from_string(message)

    for part in msg.walk():
        if part.is_multipart():
            continue
        content_type = part.get_content_type().lower()
        filename = part.get_filename()
        disposition = part.get_content_disposition()
        if disposition == "attachment" or filename:
            payload = part.get_payload(decode=True)
            if payload is None:
                payload = b""
            yield AttachmentPart(
                filename=_decode_filename(filename or ""),
                content_type=content_type,
                payload=payload,
            )
        else:
            yield BodyPart(content_type=content_type)


def get_report_attachments(message: Union[bytes, str]) -> List[Attachment]:
    """
    Extracts the attachments of a message that look like DMARC aggregate
    reports

    Args:
        message: A message in RFC 822 format, as bytes or a string

    Returns:
        list: ``filename`` and ``payload`` of each matching attachment
    """
    attachments: List[Attachment] = []
    for part in iter_message_parts(message):
        if not isinstance(part, AttachmentPart):
            continue
        if not is_dmarc_attachment(part.filename):
            logger.debug("Ignoring attachment {0}".format(part.filename))
            continue
        attachments.append({"filename": part.filename, "payload": part.payload})
    return attachments
