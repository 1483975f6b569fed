"""HTTP blueprints (JSON API), registered by the app factory."""
