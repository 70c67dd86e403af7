"""RedNote collection sync: Playwright-driven extraction of collected notes into SQLite."""
__version__ = "0.1.0"
