"""Utility functions that might be useful for other projects"""

DMARC_ATTACHMENT_SUFFIXES = (".xml", ".xml.gz", ".zip")


def is_dmarc_attachment(filename):
    """
    Checks if an attachment filename looks like a DMARC aggregate report

    Args:
        filename (str): The attachment filename

    Returns:
        bool: ``True`` if the filename ends with ``.xml``, ``.xml.gz``, or
        ``.zip``, or contains ``dmarc``, ignoring case
    """
    if not filename:
        return False
    lowered = filename.lower()
    return lowered.endswith(DMARC_ATTACHMENT_SUFFIXES) or "dmarc" in lowered


def get_mailbox_name(config):
    """Returns a ``user@host:mailbox`` label for a mailbox configuration"""
    return "{0}@{1}:{2}".format(
        config["username"], config["host"], config["mailbox"]
    )
