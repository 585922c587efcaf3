"""Returns dashboard backend: Mercado Libre OAuth credential lifecycle and API proxy."""

__version__ = "0.1.0"
