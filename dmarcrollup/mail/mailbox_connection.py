# -*- coding: utf-8 -*-

from __future__ import annotations

from abc import ABC
from typing import List

from dmarcrollup.types import Attachment


class MailboxError(RuntimeError):
    """Raised when a mailbox cannot be reached or read"""


class MailboxConnection(ABC):
    """
    Interface for a mailbox connection

    A connection is established when the object is constructed. ``close``
    must be safe to call more than once.
    """

    def fetch_unseen_attachments(self) -> List[Attachment]:
        raise NotImplementedError

    def close(self):
        raise NotImplementedError
