"""AI provider backends, output cleanup and routing."""
