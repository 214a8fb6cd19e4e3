"""Wire encodings: Prometheus text exposition and JSON."""
