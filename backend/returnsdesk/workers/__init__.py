"""Background workers that run inside the API process."""
