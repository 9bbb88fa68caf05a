"""Asset processing pipeline: staged preview, metadata and AI enrichment for uploaded files."""
