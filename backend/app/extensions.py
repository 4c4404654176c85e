"""
extensions.py — Flask extension singletons.

Initialises SQLAlchemy and Flask-SocketIO as module-level objects so they can
be imported anywhere without creating circular dependencies.

Pattern:
    1. Create the extension object here (no app attached yet).
    2. Call init_app(app) inside the app factory in app/__init__.py.
    3. Import `db` or `socketio` from here wherever needed.

    from backend.app.extensions import db, socketio

Do not pass the app object directly to SQLAlchemy() or SocketIO() at import
time — that would prevent running tests with a separate test app instance.
"""

from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# The real-time transport. Event handlers live in
# app/realtime/socket_events.py and are registered by the app factory,
# which also binds the gateway's emit callable to this object.
socketio = SocketIO()
