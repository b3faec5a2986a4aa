"""Static development server that live-reloads pages when sources change."""

__version__ = "0.1.0"
