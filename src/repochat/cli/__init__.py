"""repochat command-line interface."""
