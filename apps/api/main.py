"""Thin API launcher.

Run with: uvicorn main:app --reload

The app instance lives here rather than in harmony.app so importing
harmony.app in tests has no settings side effects.
"""

from harmony.app import add_request_id_middleware, create_app

app = create_app()
# Added last so it runs first (outermost)
add_request_id_middleware(app)

__all__ = ["app"]
