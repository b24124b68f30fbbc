"""Process entry point: ``gunicorn --chdir backend wsgi:app`` or ``python backend/wsgi.py``.

Building the app blocks until MongoDB answers; ``DatabaseUnavailable`` escaping
from here aborts startup.
"""
import os

from app import create_app

app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
