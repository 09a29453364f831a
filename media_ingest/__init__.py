"""
Media Ingest — download, verify, optimize and store messaging attachments.

    from media_ingest.pipeline import IngestionPipeline

    pipeline = IngestionPipeline.from_settings()
    url = pipeline.ingest(reference)   # str, or None on any failure
"""

__version__ = "1.0.0"
