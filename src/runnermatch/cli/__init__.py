"""CLI sub-commands for Runnermatch."""
