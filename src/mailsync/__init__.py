"""mailsync: live IMAP synchronization into a search index."""

__version__ = "0.1.0"
