# -*- coding: utf-8 -*-

from __future__ import annotations

from socket import timeout
from typing import List

from imapclient.exceptions import IMAPClientError
from mailsuite.imap import IMAPClient

from dmarcrollup.constants import DEFAULT_IMAP_TIMEOUT
from dmarcrollup.log import logger
from dmarcrollup.mail.mailbox_connection import MailboxConnection, MailboxError
from dmarcrollup.mail.message import get_report_attachments
from dmarcrollup.types import Attachment, MailboxConfig


class IMAPConnection(MailboxConnection):
    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        port: int = 993,
        ssl: bool = True,
        verify: bool = True,
        timeout: int = DEFAULT_IMAP_TIMEOUT,
        max_retries: int = 4,
        reports_folder: str = "INBOX",
    ):
        self._reports_folder = reports_folder
        self._closed = False
        try:
            self._client = IMAPClient(
                host,
                user,
                password,
                port=port,
                ssl=ssl,
                verify=verify,
                timeout=timeout,
                max_retries=max_retries,
            )
        except Exception as e:
            raise MailboxError(
                "Failed to connect to {0}:{1} as {2}: {3}".format(host, port, user, e)
            )
        logger.debug("Logged in to {0}:{1} as {2}".format(host, port, user))

    @classmethod
    def from_config(cls, config: MailboxConfig) -> "IMAPConnection":
        """Connects to the mailbox described by a ``MailboxConfig``"""
        return cls(
            config["host"],
            config["username"],
            config["password"],
            port=config["port"],
            ssl=config["use_tls"],
            verify=config.get("verify", True),
            timeout=config.get("timeout", DEFAULT_IMAP_TIMEOUT),
            reports_folder=config["mailbox"],
        )

    def fetch_unseen_attachments(self) -> List[Attachment]:
        """
        Downloads unseen messages from the reports folder and returns their
        DMARC report attachments

        Fetching a message body marks it as seen on the server.
        """
        try:
            self._client.select_folder(self._reports_folder)
            message_uids = self._client.search("UNSEEN")
        except (timeout, IMAPClientError) as e:
            raise MailboxError(
                "Failed to search {0}: {1}".format(self._reports_folder, e)
            )
        if len(message_uids) == 0:
            logger.debug("No new messages in {0}".format(self._reports_folder))
            return []
        logger.debug(
            "Found {0} new messages in {1}".format(
                len(message_uids), self._reports_folder
            )
        )

        attachments: List[Attachment] = []
        for i, msg_uid in enumerate(message_uids):
            logger.debug(
                "Processing message {0} of {1}: UID {2}".format(
                    i + 1, len(message_uids), msg_uid
                )
            )
            try:
                msg_content = self._client.fetch_message(msg_uid, parse=False)
            except (timeout, IMAPClientError) as e:
                raise MailboxError("Failed to fetch UID {0}: {1}".format(msg_uid, e))
            attachments.extend(get_report_attachments(msg_content))
        return attachments

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self._client.logout()
        except (timeout, IMAPClientError, OSError) as e:
            logger.warning("IMAP logout error: {0}".format(e))
