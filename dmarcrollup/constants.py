"""Sets global version values and defaults"""

__version__ = "1.2.0"

DEFAULT_DATABASE = "dmarc.db"
DEFAULT_FETCH_INTERVAL = 300
DEFAULT_IMAP_PORT = 993
DEFAULT_IMAP_MAILBOX = "INBOX"
DEFAULT_IMAP_TIMEOUT = 30

# Nested containers, e.g. an .xml.gz inside a .zip
MAX_CONTAINER_DEPTH = 5
