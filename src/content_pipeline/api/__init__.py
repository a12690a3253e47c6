"""HTTP service exposing the pipeline's outbound operations."""
