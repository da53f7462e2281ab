"""Payment attempts and retry scheduling."""
