import time
from typing import Callable

from flask import Flask
from flask_pymongo import PyMongo
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

COLLECTION_NAMES = ("products", "users", "orders", "wishlist")
INDEXES = (
    ("users", [("email", ASCENDING)], {"unique": True}),
    (
        "wishlist",
        [("userEmail", ASCENDING), ("productId", ASCENDING)],
        {"unique": True},
    ),
    ("orders", [("createdAt", DESCENDING)], {}),
    ("orders", [("userEmail", ASCENDING)], {}),
    ("products", [("category", ASCENDING)], {}),
)


class DatabaseUnavailable(RuntimeError):
    """Raised when MongoDB cannot be reached within the startup retry budget."""


def wait_for_database(
    client,
    logger,
    attempts: int = 10,
    delay: float = 3.0,
    sleep: Callable[[float], None] = time.sleep,
):
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            client.admin.command("ping")
        except PyMongoError as exc:
            logger.warning(
                "MongoDB connection failed (attempt %s/%s): %s", attempt, attempts, exc
            )
            if attempt < attempts:
                logger.info("Retrying MongoDB connection in %s seconds", delay)
                sleep(delay)
            continue
        logger.info("MongoDB connected on attempt %s", attempt)
        return

    logger.error("Giving up on MongoDB after %s attempts", attempts)
    raise DatabaseUnavailable(f"MongoDB unreachable after {attempts} attempts")


def connect_database(app: Flask):
    """Open the shared Flask-PyMongo client and return the storefront database."""
    mongo = PyMongo(app, connectTimeoutMS=30000, socketTimeoutMS=30000)
    wait_for_database(
        mongo.cx,
        app.logger,
        attempts=app.config["MONGO_CONNECT_ATTEMPTS"],
        delay=app.config["MONGO_CONNECT_DELAY_SECONDS"],
    )
    if mongo.db is not None:
        return mongo.db
    return mongo.cx[app.config["MONGO_DBNAME"]]


def ensure_collections(db, logger):
    try:
        existing = set(db.list_collection_names())
        for name in COLLECTION_NAMES:
            if name not in existing:
                logger.info("Creating %s collection", name)
                db.create_collection(name)
    except PyMongoError as exc:
        logger.warning("Unable to ensure collections: %s", exc)

    for collection_name, keys, options in INDEXES:
        try:
            db[collection_name].create_index(keys, **options)
        except PyMongoError as exc:
            logger.warning(
                "Unable to ensure index %s on %s: %s", keys, collection_name, exc
            )
