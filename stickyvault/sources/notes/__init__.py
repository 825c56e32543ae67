"""Note files, the index sidecar and conflicted-copy handling."""
