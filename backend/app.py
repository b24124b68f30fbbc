import os
from datetime import timedelta
from functools import wraps
from typing import Dict, Optional

import click
from dotenv import load_dotenv
from flask import Flask, current_app, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    get_jwt_identity,
    jwt_required,
    verify_jwt_in_request,
)
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException

from database import connect_database, ensure_collections
from documents import (
    is_valid_email,
    normalize_email,
    normalize_object_id_value,
    normalize_product_payload,
    normalize_product_reference,
    safe_float,
    serialize_document,
    utcnow,
)
from order_stats import ORDER_STATUSES, build_order_statistics

load_dotenv()

ALL_CATEGORIES = "All"
USER_ROLES = {"user", "admin"}
DEFAULT_USER_ROLE = "user"
# Order fields the client may not set on create.
ORDER_RESERVED_FIELDS = {"_id", "id", "userEmail", "status", "createdAt", "updatedAt"}


def datastore_errors(message: str):
    """Answer ``500 {message}`` when the wrapped view hits a MongoDB failure."""

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            try:
                return view(*args, **kwargs)
            except PyMongoError as exc:
                current_app.logger.error("%s: %s", message, exc)
                return jsonify({"message": message}), 500

        return wrapper

    return decorator


def create_app(config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``config`` overrides the environment-derived settings. ``database`` is an
    already opened database handle; when omitted the app connects through
    Flask-PyMongo and waits for the server to answer.
    """
    app = Flask(__name__)

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        minutes=int(os.getenv("JWT_ACCESS_TOKEN_EXPIRES_MINUTES", "60"))
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/e-commerce"
    )
    app.config["MONGO_DBNAME"] = os.getenv("MONGO_DBNAME", "e-commerce")
    app.config["MONGO_CONNECT_ATTEMPTS"] = int(os.getenv("MONGO_CONNECT_ATTEMPTS", "10"))
    app.config["MONGO_CONNECT_DELAY_SECONDS"] = float(
        os.getenv("MONGO_CONNECT_DELAY_SECONDS", "3")
    )
    if config:
        app.config.update(config)

    app.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

    # --- Initialize extensions ---
    allowed_origins = [
        os.getenv("FRONTEND_URL", "http://localhost:5173").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def missing_token(reason):
        return jsonify({"message": "Authentication required."}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return jsonify({"message": "Invalid authentication token."}), 401

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify({"message": "Authentication token has expired."}), 401

    if database is None:
        database = connect_database(app)
    ensure_collections(database, app.logger)
    db = database

    # --- Helpers ---

    def current_email() -> str:
        return normalize_email(get_jwt_identity())

    def get_user_role(user_document) -> str:
        if not user_document:
            return DEFAULT_USER_ROLE
        role = str(user_document.get("role") or "").strip().lower()
        return role if role in USER_ROLES else DEFAULT_USER_ROLE

    def get_current_user():
        email = current_email()
        return db.users.find_one({"email": email}) if email else None

    def is_admin(user_document) -> bool:
        return user_document is not None and get_user_role(user_document) == "admin"

    def require_admin_user():
        current_user = get_current_user()
        if is_admin(current_user):
            return current_user, None

        app.logger.warning(
            "Admin access denied for %s on %s %s",
            current_email() or "anonymous",
            request.method,
            request.path,
        )
        return None, (jsonify({"message": "Admins only"}), 403)

    def parse_object_id(identifier: str, label: str):
        object_id = normalize_object_id_value(identifier)
        if object_id is None:
            return None, (jsonify({"message": f"Invalid {label} identifier."}), 400)
        return object_id, None

    def fetch_product(product_id: str):
        object_id, id_error = parse_object_id(product_id, "product")
        if id_error:
            return None, id_error

        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            return None, (jsonify({"message": "Product not found"}), 404)

        return product_document, None

    def find_product_by_reference(product_reference: str):
        object_id = normalize_object_id_value(product_reference)
        if object_id is None:
            return None
        return db.products.find_one({"_id": object_id})

    # --- Error handlers ---

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        if error.code is None or error.code < 400:
            return error
        return jsonify({"message": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        app.logger.exception(
            "Unhandled error on %s %s", request.method, request.path
        )
        return jsonify({"message": "Internal server error"}), 500

    # --- ROUTES ---

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({"message": "Storefront API running"})

    @app.route("/health", methods=["GET"])
    def health():
        return {"status": "ok"}, 200

    # Users
    @app.route("/api/users/sync", methods=["POST"])
    @datastore_errors("User sync failed")
    def sync_user():
        verify_jwt_in_request(optional=True)
        payload = request.get_json(silent=True) or {}
        email = current_email() or normalize_email(payload.get("email"))
        if not is_valid_email(email):
            return jsonify({"message": "A valid email is required."}), 400

        try:
            user_document = db.users.find_one_and_update(
                {"email": email},
                {
                    "$setOnInsert": {
                        "email": email,
                        "role": DEFAULT_USER_ROLE,
                        "createdAt": utcnow(),
                    }
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lost an insert race with a concurrent sync for the same email.
            user_document = db.users.find_one({"email": email})

        return jsonify(serialize_document(user_document))

    @app.route("/api/users/me", methods=["GET"])
    @jwt_required()
    @datastore_errors("Failed to fetch user")
    def get_own_user():
        user_document = get_current_user()
        if not user_document:
            return jsonify({"message": "User not found"}), 404
        return jsonify(serialize_document(user_document))

    # Products
    @app.route("/api/products", methods=["GET"])
    @datastore_errors("Failed to fetch products")
    def list_products():
        query: Dict[str, object] = {}
        category = (request.args.get("category") or "").strip()
        if category and category != ALL_CATEGORIES:
            query["category"] = category

        cursor = db.products.find(query)

        raw_limit = request.args.get("limit")
        if raw_limit:
            try:
                limit = int(raw_limit)
            except ValueError:
                limit = 0
            if limit <= 0:
                return jsonify({"message": "Limit must be a positive integer."}), 400
            cursor = cursor.limit(limit)

        return jsonify([serialize_document(document) for document in cursor])

    @app.route("/api/products/<product_id>", methods=["GET"])
    @datastore_errors("Failed to fetch product")
    def get_product(product_id: str):
        product_document, load_error = fetch_product(product_id)
        if load_error:
            return load_error
        return jsonify(serialize_document(product_document))

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    @datastore_errors("Failed to create product")
    def create_product():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        product_fields, validation_error = normalize_product_payload(payload)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        timestamp = utcnow()
        product_document = {
            "inStock": True,
            **product_fields,
            "createdAt": timestamp,
            "updatedAt": timestamp,
        }
        result = db.products.insert_one(product_document)
        created_product = db.products.find_one({"_id": result.inserted_id})

        app.logger.info(
            "Product %s created by %s", result.inserted_id, admin_user.get("email")
        )
        return jsonify(serialize_document(created_product)), 201

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    @datastore_errors("Failed to update product")
    def update_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id, id_error = parse_object_id(product_id, "product")
        if id_error:
            return id_error

        payload = request.get_json(silent=True) or {}
        update_fields, validation_error = normalize_product_payload(
            payload, partial=True
        )
        if validation_error:
            return jsonify({"message": validation_error}), 400
        update_fields["updatedAt"] = utcnow()

        result = db.products.update_one({"_id": object_id}, {"$set": update_fields})
        if not result.matched_count:
            return jsonify({"message": "Product not found"}), 404

        updated_product = db.products.find_one({"_id": object_id})
        return jsonify(
            {
                "message": "Product updated successfully",
                "product": serialize_document(updated_product),
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    @datastore_errors("Failed to delete product")
    def delete_product(product_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id, id_error = parse_object_id(product_id, "product")
        if id_error:
            return id_error

        result = db.products.delete_one({"_id": object_id})
        if not result.deleted_count:
            return jsonify({"message": "Product not found"}), 404

        app.logger.info("Product %s deleted by %s", object_id, admin_user.get("email"))
        return jsonify({"message": "Product deleted successfully"})

    # Orders
    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    @datastore_errors("Order failed")
    def create_order():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({"message": "Order data must be a JSON object."}), 400

        items = payload.get("items")
        if not isinstance(items, list) or not items:
            return jsonify({"message": "An order needs at least one item."}), 400

        total = safe_float(payload.get("total"), None)
        if total is None or total < 0:
            return jsonify({"message": "Order total must be a valid number."}), 400

        extra_fields = {
            key: value
            for key, value in payload.items()
            if key not in ORDER_RESERVED_FIELDS
            and key not in ("items", "total")
            and not str(key).startswith("$")
        }
        timestamp = utcnow()
        order_document = {
            **extra_fields,
            "items": items,
            "total": round(total, 2),
            "status": ORDER_STATUSES[0],
            "userEmail": current_email(),
            "createdAt": timestamp,
            "updatedAt": timestamp,
        }
        result = db.orders.insert_one(order_document)
        return jsonify({"id": str(result.inserted_id)}), 201

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    @datastore_errors("Failed to fetch orders")
    def list_all_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        cursor = db.orders.find({}).sort("createdAt", DESCENDING)
        return jsonify([serialize_document(document) for document in cursor])

    @app.route("/api/orders/me", methods=["GET"])
    @jwt_required()
    @datastore_errors("Failed to fetch orders")
    def list_own_orders():
        cursor = db.orders.find({"userEmail": current_email()}).sort(
            "createdAt", DESCENDING
        )
        return jsonify([serialize_document(document) for document in cursor])

    @app.route("/api/orders/stats", methods=["GET"])
    @jwt_required()
    @datastore_errors("Failed to fetch order statistics")
    def order_statistics():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify(build_order_statistics(db.orders))

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    @datastore_errors("Failed to fetch order")
    def get_order(order_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id, id_error = parse_object_id(order_id, "order")
        if id_error:
            return id_error

        order_document = db.orders.find_one({"_id": object_id})
        if not order_document:
            return jsonify({"message": "Order not found"}), 404
        return jsonify(serialize_document(order_document))

    @app.route("/api/orders/<order_id>", methods=["PUT"])
    @jwt_required()
    @datastore_errors("Failed to update order")
    def update_order_status(order_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id, id_error = parse_object_id(order_id, "order")
        if id_error:
            return id_error

        payload = request.get_json(silent=True) or {}
        status = str(payload.get("status") or "").strip().lower()
        if status not in ORDER_STATUSES:
            return (
                jsonify(
                    {"message": f"Status must be one of: {', '.join(ORDER_STATUSES)}."}
                ),
                400,
            )

        result = db.orders.update_one(
            {"_id": object_id}, {"$set": {"status": status, "updatedAt": utcnow()}}
        )
        if not result.matched_count:
            return jsonify({"message": "Order not found"}), 404

        app.logger.info(
            "Order %s set to %s by %s", object_id, status, admin_user.get("email")
        )
        return jsonify({"message": "Order status updated successfully"})

    @app.route("/api/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    @datastore_errors("Failed to delete order")
    def delete_order(order_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        object_id, id_error = parse_object_id(order_id, "order")
        if id_error:
            return id_error

        result = db.orders.delete_one({"_id": object_id})
        if not result.deleted_count:
            return jsonify({"message": "Order not found"}), 404
        return jsonify({"message": "Order deleted successfully"})

    # Wishlist
    @app.route("/api/wishlist", methods=["GET"])
    @jwt_required()
    @datastore_errors("Failed to fetch wishlist")
    def list_wishlist():
        wishlist = []
        for item in db.wishlist.find({"userEmail": current_email()}):
            product_document = find_product_by_reference(item.get("productId"))
            wishlist.append(
                {
                    **serialize_document(item),
                    "product": serialize_document(product_document)
                    if product_document
                    else None,
                }
            )
        return jsonify(wishlist)

    @app.route("/api/wishlist/check/<product_id>", methods=["GET"])
    @jwt_required()
    @datastore_errors("Failed to check wishlist")
    def check_wishlist(product_id: str):
        item = db.wishlist.find_one(
            {
                "userEmail": current_email(),
                "productId": normalize_product_reference(product_id),
            }
        )
        return jsonify(
            {"exists": item is not None, "itemId": str(item["_id"]) if item else None}
        )

    @app.route("/api/wishlist", methods=["POST"])
    @jwt_required()
    @datastore_errors("Failed to add to wishlist")
    def add_to_wishlist():
        payload = request.get_json(silent=True) or {}
        product_reference = normalize_product_reference(payload.get("productId"))
        if not product_reference:
            return jsonify({"message": "A productId is required."}), 400

        timestamp = utcnow()
        wishlist_item = {
            "userEmail": current_email(),
            "productId": product_reference,
            "notes": "",
            "addedAt": timestamp,
            "updatedAt": timestamp,
        }
        try:
            result = db.wishlist.update_one(
                {
                    "userEmail": wishlist_item["userEmail"],
                    "productId": product_reference,
                },
                {"$setOnInsert": wishlist_item},
                upsert=True,
            )
        except DuplicateKeyError:
            return jsonify({"message": "Already in wishlist"}), 400

        if result.upserted_id is None:
            return jsonify({"message": "Already in wishlist"}), 400

        return (
            jsonify(serialize_document({"_id": result.upserted_id, **wishlist_item})),
            201,
        )

    @app.route("/api/wishlist/<item_id>", methods=["PUT"])
    @jwt_required()
    @datastore_errors("Failed to update")
    def update_wishlist_item(item_id: str):
        object_id, id_error = parse_object_id(item_id, "wishlist item")
        if id_error:
            return id_error

        payload = request.get_json(silent=True) or {}
        notes = payload.get("notes")
        result = db.wishlist.update_one(
            {"_id": object_id, "userEmail": current_email()},
            {
                "$set": {
                    "notes": str(notes) if notes is not None else "",
                    "updatedAt": utcnow(),
                }
            },
        )
        if not result.matched_count:
            return jsonify({"message": "Item not found"}), 404
        return jsonify({"message": "Updated"})

    @app.route("/api/wishlist/<item_id>", methods=["DELETE"])
    @jwt_required()
    @datastore_errors("Failed to remove from wishlist")
    def remove_wishlist_item(item_id: str):
        object_id, id_error = parse_object_id(item_id, "wishlist item")
        if id_error:
            return id_error

        result = db.wishlist.delete_one({"_id": object_id, "userEmail": current_email()})
        if not result.deleted_count:
            return jsonify({"message": "Item not found in wishlist"}), 404
        return jsonify({"message": "Removed from wishlist"})

    @app.route("/api/wishlist/by-product/<product_id>", methods=["DELETE"])
    @jwt_required()
    @datastore_errors("Failed to remove from wishlist")
    def remove_wishlist_product(product_id: str):
        result = db.wishlist.delete_one(
            {
                "userEmail": current_email(),
                "productId": normalize_product_reference(product_id),
            }
        )
        if not result.deleted_count:
            return jsonify({"message": "Item not found in wishlist"}), 404
        return jsonify({"message": "Removed from wishlist", "success": True})

    # --- CLI ---

    @app.cli.command("grant-admin")
    @click.argument("email")
    def grant_admin(email: str):
        """Give EMAIL the admin role, creating the user if needed."""
        normalized_email = normalize_email(email)
        if not is_valid_email(normalized_email):
            raise click.BadParameter("not a valid email address", param_hint="EMAIL")

        db.users.update_one(
            {"email": normalized_email},
            {
                "$set": {"role": "admin"},
                "$setOnInsert": {"email": normalized_email, "createdAt": utcnow()},
            },
            upsert=True,
        )
        app.logger.info("Granted admin role to %s", normalized_email)
        click.echo(f"{normalized_email} is now an admin.")

    return app
