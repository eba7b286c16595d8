"""Campus information bot: LINE webhook, cached scraping and query handlers."""

__version__ = "0.1.0"
