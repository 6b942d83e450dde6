"""Web runner for taskforce projects."""
