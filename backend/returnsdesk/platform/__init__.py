"""Cross-cutting platform concerns: error shapes, logging setup."""
