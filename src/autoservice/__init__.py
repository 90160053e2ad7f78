"""
Autoservice assistant: a conversational helper for vehicle maintenance.

Photos and PDFs of workshop invoices, registration papers and service
booklets are read (OCR + vision model), confirmed with the user, and stored
as vehicles, invoices and maintenance history in a local SQLite database.
"""

__version__ = "0.1.0"

__all__ = [
    "chat",
    "config",
    "domain",
    "errors",
    "logging",
    "paths",
    "pipeline",
    "store",
    "web",
]
