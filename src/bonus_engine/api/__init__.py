"""HTTP API for the bonus engine."""
