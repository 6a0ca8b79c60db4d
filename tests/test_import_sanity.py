"""Import sanity tests.

These lightweight tests verify that the WSGI entrypoint and core modules
can be imported without errors — the minimum bar for a deploy.
"""

import pytest


def test_app_module_imports():
    """The Flask app module must import without errors."""
    import app  # noqa: F401


def test_wsgi_app_object():
    """Gunicorn's 'app:app' entrypoint must resolve to a Flask instance."""
    from app import app as flask_app
    assert flask_app is not None
    assert hasattr(flask_app, "route"), "app object is not a Flask instance"


def test_core_symbols_import():
    """Core symbols used by app.py must be importable."""
    from moderation import moderate_reviews, require_moderator
    from places import PlaceIndex, load_sources
    from selector import CascadingSelector
    from submission import submit_review
    assert all((moderate_reviews, require_moderator, PlaceIndex, load_sources,
                CascadingSelector, submit_review))


def test_gunicorn_hooks_import():
    import gunicorn_config
    assert callable(gunicorn_config.when_ready)
    assert callable(gunicorn_config.post_fork)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
