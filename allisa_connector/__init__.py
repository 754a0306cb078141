"""WiseTime Allisa Connector - posts WiseTime time to Allisa cases."""

__version__ = "1.0.0"
