"""jobcapture - rate-limited, human-supervised capture of job postings."""

__version__ = "0.1.0"
