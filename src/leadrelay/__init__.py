"""leadrelay - relay web form submissions into CRM leads over OAuth2."""

__version__ = "0.1.0"
