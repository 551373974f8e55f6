"""
media-pipeline source package

This is the main source package containing the job queues, event
ingestion, popularity aggregation and supporting components of the media
platform backend.
"""

__version__ = "0.1.0"
