"""Cross-cutting runtime concerns: logging, tracing, metrics."""
