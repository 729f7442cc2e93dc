import os
import logging

from flask import Flask, jsonify, request, abort
from flask_cors import CORS

from . import catalog, projections
from .circulation import CirculationManager
from .config import Config
from .db import make_engine, make_session_factory
from .errors import CirculationError, ConstraintViolation
from .reservations import ReservationLedger

# ---------------------------------------------------------
# Logging
# ---------------------------------------------------------
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------
# Flask + DB setup
# ---------------------------------------------------------

app = Flask(__name__)
app.config.from_object(Config)
CORS(app)

engine = make_engine(
    app.config["SQLALCHEMY_DATABASE_URI"],
    lock_timeout=app.config["LOCK_TIMEOUT_SECONDS"],
    echo=app.config["SQLALCHEMY_ECHO"],
)
# Creates tables if not present
SessionLocal = make_session_factory(engine)

circulation = CirculationManager.from_config(SessionLocal, app.config)
reservations = ReservationLedger(SessionLocal)


# ----------------- helpers -----------------

def require_api_key(func):
    from functools import wraps

    @wraps(func)
    def wrapper(*args, **kwargs):
        sent_key = request.headers.get("X-API-Key")
        expected = app.config.get("SERVICE_API_KEY")
        if not expected or sent_key != expected:
            logger.warning("Invalid API key on %s", request.path)
            abort(401, description="Invalid or missing service API key")
        return func(*args, **kwargs)

    return wrapper


def int_field(data, name, default=None):
    value = data.get(name, default)
    if value is None:
        raise ConstraintViolation(f"{name} required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConstraintViolation(f"{name} must be an integer")


@app.errorhandler(CirculationError)
def handle_circulation_error(exc):
    if exc.http_status >= 500:
        logger.error("%s: %s", exc.code, exc.message)
    return jsonify(exc.to_dict()), exc.http_status


# ----------------- health -----------------

@app.get("/api/health")
def health():
    return jsonify({"status": "ok", "service": "circulation_service"})


# ----------------- catalog endpoints -----------------

@app.post("/api/authors")
def create_author():
    data = request.get_json(force=True)
    session = SessionLocal()
    try:
        return jsonify(catalog.create_author(session, data)), 201
    finally:
        session.close()


@app.post("/api/publishers")
def create_publisher():
    data = request.get_json(force=True)
    session = SessionLocal()
    try:
        return jsonify(catalog.create_publisher(session, data)), 201
    finally:
        session.close()


@app.post("/api/genres")
def create_genre():
    data = request.get_json(force=True)
    session = SessionLocal()
    try:
        return jsonify(catalog.create_genre(session, data)), 201
    finally:
        session.close()


@app.post("/api/books")
@require_api_key
def create_book():
    data = request.get_json(force=True)
    session = SessionLocal()
    try:
        return jsonify(catalog.create_book(session, data)), 201
    finally:
        session.close()


@app.get("/api/books/<int:book_id>")
def get_book(book_id):
    session = SessionLocal()
    try:
        return jsonify(catalog.get_book(session, book_id))
    finally:
        session.close()


@app.delete("/api/books/<int:book_id>")
@require_api_key
def delete_book(book_id):
    session = SessionLocal()
    try:
        catalog.delete_book(session, book_id)
        return jsonify({"message": "Deleted"}), 200
    finally:
        session.close()


@app.post("/api/books/<int:book_id>/instances")
@require_api_key
def add_instance(book_id):
    data = request.get_json(force=True)
    session = SessionLocal()
    try:
        return jsonify(catalog.add_instance(session, book_id, data)), 201
    finally:
        session.close()


@app.get("/api/catalog/search")
def search_catalog():
    """
    Title/author substring search.
    - ?query=...  case-insensitive match
    - no params   returns every title
    """
    query = request.args.get("query", "")
    session = SessionLocal()
    try:
        return jsonify(projections.search_catalog(session, query))
    finally:
        session.close()


@app.get("/api/catalog/available")
def available_titles():
    session = SessionLocal()
    try:
        return jsonify(projections.list_available_titles(session))
    finally:
        session.close()


# ----------------- reader endpoints -----------------

@app.post("/api/readers")
def create_reader():
    data = request.get_json(force=True)
    session = SessionLocal()
    try:
        return jsonify(catalog.create_reader(session, data)), 201
    finally:
        session.close()


@app.get("/api/readers/<int:reader_id>")
def get_reader(reader_id):
    session = SessionLocal()
    try:
        return jsonify(catalog.get_reader(session, reader_id))
    finally:
        session.close()


# ----------------- loan endpoints -----------------

@app.post("/api/loans")
@require_api_key
def issue_book():
    data = request.get_json(force=True)
    instance_id = int_field(data, "instance_id")
    reader_id = int_field(data, "reader_id")
    days = int_field(data, "days", app.config["DEFAULT_LOAN_DAYS"])

    loan_id = circulation.issue_book(instance_id, reader_id, days)
    return jsonify({"loan_id": loan_id}), 201


@app.post("/api/loans/<int:loan_id>/return")
@require_api_key
def return_book(loan_id):
    data = request.get_json(silent=True) or {}
    return_date = catalog.parse_date(data.get("return_date"), "return_date")

    result = circulation.return_book(loan_id, return_date)
    return jsonify(result.to_dict()), 200


@app.get("/api/loans/active")
def active_loans():
    session = SessionLocal()
    try:
        return jsonify(projections.list_active_loans(session, circulation.clock()))
    finally:
        session.close()


@app.post("/api/instances/<int:instance_id>/status")
@require_api_key
def change_instance_status(instance_id):
    data = request.get_json(force=True)
    status = data.get("status")
    if not status:
        raise ConstraintViolation("status required")

    new_status = circulation.change_instance_status(instance_id, status)
    return jsonify({"instance_id": instance_id, "status": new_status.value})


# ----------------- reservation endpoints -----------------

@app.post("/api/reservations")
def create_reservation():
    data = request.get_json(force=True)
    book_id = int_field(data, "book_id")
    reader_id = int_field(data, "reader_id")
    return jsonify(reservations.reserve(book_id, reader_id)), 201


@app.get("/api/reservations")
def list_reservations():
    reader_id = request.args.get("reader_id", type=int)
    book_id = request.args.get("book_id", type=int)
    status = request.args.get("status")
    return jsonify(
        reservations.list_reservations(reader_id=reader_id, book_id=book_id, status=status)
    )


@app.post("/api/reservations/<int:reservation_id>/complete")
@require_api_key
def complete_reservation(reservation_id):
    return jsonify(reservations.complete_reservation(reservation_id))


@app.post("/api/reservations/<int:reservation_id>/cancel")
@require_api_key
def cancel_reservation(reservation_id):
    return jsonify(reservations.cancel_reservation(reservation_id))


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    app.run(host="0.0.0.0", port=port, debug=True)
