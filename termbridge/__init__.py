"""TermBridge - bridge a local agent or shell session to a mobile client."""

__version__ = "0.3.0"
