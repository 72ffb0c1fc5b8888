"""
ASGI entrypoint: expose `app` pour les process managers / déploiements.

- En production, un process manager (ex: gunicorn + uvicorn workers) importe `restopay.asgi:app`.
- Toute la configuration FastAPI est centralisée dans restopay.app.create_app.
"""

from restopay.app import create_app

app = create_app()
