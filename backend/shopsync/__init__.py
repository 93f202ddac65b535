"""shopsync: Shopify order sync engine and financial metrics service."""

__version__ = "0.1.0"
