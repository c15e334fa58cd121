"""KycFlow -- bulk identity verification from uploaded spreadsheets."""

__version__ = "1.0.0"
