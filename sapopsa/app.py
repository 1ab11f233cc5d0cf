import os
import re
import unicodedata
from copy import deepcopy
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from bson import ObjectId
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .auth import (
    ROLE_ADMIN,
    ROLE_CUSTOMER,
    get_user_role,
    init_jwt,
    issue_token,
    normalize_email,
    requester_email,
    verify_admin,
    verify_token,
)
from .errors import (
    ApiError,
    Conflict,
    Forbidden,
    NotFound,
    RequestTimeout,
    UpstreamError,
    ValidationError,
)
from .orders import (
    CANONICAL_STATUSES,
    INITIAL_STATUS,
    STATUS_DELIVERED,
    canonical_status,
    check_transition,
)
from .schemas import (
    DEFAULT_SETTINGS,
    PRODUCT_LIST_FIELDS,
    SETTINGS_SECTIONS,
    CategoryCreate,
    CategoryUpdate,
    HeadingUpdate,
    OrderCreate,
    ProductCreate,
    ProductUpdate,
    RoleChange,
    SettingsUpdate,
    SliderCreate,
    SliderUpdate,
    StatusUpdate,
    UserUpsert,
    changed_fields,
    flatten_updates,
    form_payload,
    validate_payload,
)
from .store import Store, parse_object_id
from .uploads import (
    build_upload_url,
    remove_images,
    save_image,
    save_images,
)

load_dotenv()

HEADING_ID = "website-heading"
SETTINGS_ID = "site-settings"
MAX_PAGE_SIZE = 200

PRODUCT_FIELDS = {
    "title",
    "price",
    "images",
    "category",
    "demographic",
    "description",
    "sizes",
    "colors",
    "specifications",
    "created_at",
}
PRODUCT_SEARCH_FIELDS = ("title", "description", "category", "demographic")
CATEGORY_FIELDS = {"title", "demographic", "route", "image", "created_at"}
SLIDER_FIELDS = {"title", "image", "created_at"}
INTERNAL_FIELDS = {"seq", "image_filenames", "image_filename"}

# query parameter -> order document field
ORDER_FILTERS = {
    "status": "status",
    "delivery_email": "delivery.email",
    "phone": "delivery.phone",
    "transaction_id": "payment.transaction_id",
}


def _int_from_env(name: str, default: int, minimum: int = 0) -> int:
    raw_value = os.getenv(name, str(default))
    try:
        return max(minimum, int(raw_value))
    except (TypeError, ValueError):
        return default


def create_app(config: Optional[Dict] = None, store: Optional[Store] = None) -> Flask:
    """Create and configure the Flask application.

    ``store`` lets callers inject the document store; without it one is built
    from ``MONGO_URI`` through Flask-PyMongo.
    """
    app = Flask(__name__)

    # Honor proxy headers so generated image links keep the public origin.
    trusted_proxy_hops = _int_from_env("TRUSTED_PROXY_HOPS", 1)
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "ACCESS_TOKEN_SECRET", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        days=_int_from_env("TOKEN_EXPIRES_DAYS", 365, minimum=1)
    )
    app.config["JWT_TOKEN_LOCATION"] = ["headers"]
    app.config["JWT_HEADER_NAME"] = "auth"
    app.config["JWT_HEADER_TYPE"] = "Bearer"
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/sapopsa"
    )
    app.config["MONGO_TIMEOUT_MS"] = _int_from_env("MONGO_TIMEOUT_MS", 5000, minimum=1)
    app.config["MAX_CONTENT_LENGTH"] = (
        _int_from_env("MAX_UPLOAD_SIZE_MB", 16, minimum=1) * 1024 * 1024
    )
    app.config["UPLOAD_FOLDER"] = os.getenv(
        "UPLOAD_FOLDER", os.path.join(app.root_path, "uploads")
    )
    app.config["ALLOWED_IMAGE_EXTENSIONS"] = {"png", "jpg", "jpeg"}
    app.config["UPLOAD_TIMEOUT_SECONDS"] = _int_from_env(
        "UPLOAD_TIMEOUT_SECONDS", 30, minimum=1
    )
    app.config["UPLOAD_WORKERS"] = _int_from_env("UPLOAD_WORKERS", 4, minimum=1)
    app.config["HOST_URL"] = os.getenv("HOST_URL", "").strip()
    app.config["DEFAULT_ADMIN_EMAIL"] = normalize_email(os.getenv("DEFAULT_ADMIN_EMAIL"))
    app.config["REPORT_RECENT_LIMIT"] = _int_from_env("REPORT_RECENT_LIMIT", 5, minimum=1)
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO").upper()

    if config:
        app.config.update(config)

    try:
        app.logger.setLevel(app.config["LOG_LEVEL"])
    except (TypeError, ValueError):
        app.logger.setLevel("INFO")
        app.logger.warning("Unknown LOG_LEVEL %r, using INFO", app.config["LOG_LEVEL"])
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    # --- Initialize extensions ---
    allowed_origins = [
        origin.strip()
        for origin in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")
        if origin.strip()
    ]
    CORS(app, origins=allowed_origins or "*")

    init_jwt(app)

    if store is None:
        timeout_ms = app.config["MONGO_TIMEOUT_MS"]
        mongo = PyMongo(
            app,
            serverSelectionTimeoutMS=timeout_ms,
            timeoutMS=timeout_ms,
        )
        store = Store(mongo.db)
    app.extensions["sapopsa.store"] = store

    try:
        store.users.create_index("email", unique=True)
        store.orders.create_index("delivery.email")
        for name in ("products", "categories", "sliders", "users", "orders"):
            store.collection(name).create_index([("seq", -1)])
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    register_error_handlers(app)

    # --- Helpers ---

    def serialize_value(value):
        if isinstance(value, datetime):
            return value.isoformat() + "Z"
        if isinstance(value, dict):
            return {key: serialize_value(item) for key, item in value.items()}
        if isinstance(value, list):
            return [serialize_value(item) for item in value]
        if isinstance(value, ObjectId):
            return str(value)
        return value

    def serialize_document(document) -> Dict:
        if not document:
            return {}
        serialized: Dict = {}
        for key, value in document.items():
            if key in INTERNAL_FIELDS:
                continue
            if key == "_id":
                serialized["id"] = str(value)
                continue
            serialized[key] = serialize_value(value)
        return serialized

    def serialize_user(user_document) -> Dict:
        if not user_document:
            return {}
        created_at = user_document.get("created_at")
        return {
            "id": str(user_document.get("_id")),
            "email": user_document.get("email", "") or "",
            "name": user_document.get("name", "") or "",
            "phone": user_document.get("phone", "") or "",
            "photo_url": user_document.get("photo_url", "") or "",
            "address": user_document.get("address", "") or "",
            "role": get_user_role(user_document),
            "created_at": created_at.isoformat() + "Z"
            if isinstance(created_at, datetime)
            else None,
        }

    def parse_int_arg(name: str, default: int, minimum: int = 0) -> int:
        raw_value = request.args.get(name)
        if raw_value is None or not raw_value.strip():
            return default
        try:
            value = int(raw_value)
        except ValueError:
            raise ValidationError(f"'{name}' must be a whole number.")
        if value < minimum:
            raise ValidationError(f"'{name}' must be at least {minimum}.")
        return value

    def read_paging() -> Tuple[int, int, int]:
        limit = min(parse_int_arg("limit", 0), MAX_PAGE_SIZE)
        page = parse_int_arg("page", 1, minimum=1)
        skip = (page - 1) * limit if limit else 0
        return limit, page, skip

    def read_projection(allowed: Iterable[str]) -> Optional[Dict[str, int]]:
        raw_fields = (request.args.get("fields") or "").strip()
        if not raw_fields:
            return None
        requested = [field.strip() for field in raw_fields.split(",") if field.strip()]
        unknown = sorted(set(requested) - set(allowed))
        if unknown:
            raise ValidationError(f"Unknown fields requested: {', '.join(unknown)}.")
        return {field: 1 for field in requested}

    def exact_match(value: str):
        return re.compile(f"^{re.escape(value)}$", re.IGNORECASE)

    def text_search(term: str, fields: Iterable[str]) -> Dict:
        regex = re.compile(re.escape(term), re.IGNORECASE)
        return {"$or": [{field: regex} for field in fields]}

    def build_product_query() -> Dict:
        query: Dict = {}
        demographic = (request.args.get("demographic") or "").strip()
        if demographic:
            query["demographic"] = exact_match(demographic)
        category = (request.args.get("category") or "").strip()
        if category:
            query["category"] = exact_match(category)
        search_term = (request.args.get("search") or "").strip()
        if search_term:
            query.update(text_search(search_term, PRODUCT_SEARCH_FIELDS))
        return query

    def list_response(key: str, name: str, query: Dict, allowed_fields=None):
        limit, page, skip = read_paging()
        projection = read_projection(allowed_fields) if allowed_fields else None
        documents = store.latest(
            name, query, limit=limit, skip=skip, projection=projection
        )
        return jsonify(
            {
                key: [serialize_document(document) for document in documents],
                "total": store.count(name, query),
                "page": page,
                "limit": limit,
            }
        )

    def fetch_document(name: str, identifier: str, label: str) -> Dict:
        object_id = parse_object_id(identifier, label)
        document = store.collection(name).find_one({"_id": object_id})
        if not document:
            raise NotFound(f"{label.capitalize()} not found.")
        return document

    def update_document(name: str, identifier: str, label: str, updates: Dict) -> Dict:
        object_id = parse_object_id(identifier, label)
        updates["updated_at"] = datetime.utcnow()
        document = store.collection(name).find_one_and_update(
            {"_id": object_id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not document:
            raise NotFound(f"{label.capitalize()} not found.")
        app.logger.info("Updated %s %s (%s)", label, identifier, ", ".join(sorted(updates)))
        return document

    def delete_document(name: str, identifier: str, label: str):
        object_id = parse_object_id(identifier, label)
        document = store.collection(name).find_one_and_delete({"_id": object_id})
        if document:
            stored = list(document.get("image_filenames") or [])
            if document.get("image_filename"):
                stored.append(document["image_filename"])
            remove_images(stored)
            app.logger.info("Deleted %s %s", label, identifier)
        return jsonify(
            {
                "message": f"{label.capitalize()} removed." if document else f"No {label} to remove.",
                "deletedCount": 1 if document else 0,
            }
        )

    def insert_with_images(name: str, document: Dict, filenames: List[str]) -> Dict:
        try:
            return store.insert(name, document)
        except PyMongoError:
            remove_images(filenames)
            raise

    def request_payload(list_fields=()) -> Dict:
        if request.form:
            return form_payload(request.form, list_fields)
        return request.get_json(silent=True) or {}

    def slugify(value: Optional[str]) -> str:
        normalized = " ".join(str(value or "").split()).lower()
        ascii_name = (
            unicodedata.normalize("NFKD", normalized)
            .encode("ascii", "ignore")
            .decode("ascii")
        )
        slug = re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-")
        return slug or uuid4().hex

    def is_admin_email(email: str) -> bool:
        user_document = store.users.find_one({"email": email})
        return get_user_role(user_document or {"email": email}) == ROLE_ADMIN

    def current_settings() -> Dict:
        settings = deepcopy(DEFAULT_SETTINGS)
        stored = store.settings.find_one({"_id": SETTINGS_ID}) or {}
        for key, value in stored.items():
            if key in ("_id", "seq"):
                continue
            if isinstance(value, dict) and isinstance(settings.get(key), dict):
                settings[key].update(value)
            else:
                settings[key] = value
        return serialize_value(settings)

    def merge_settings(updates: Dict):
        flattened = flatten_updates(updates)
        flattened["updated_at"] = datetime.utcnow()
        store.settings.update_one(
            {"_id": SETTINGS_ID},
            {"$set": flattened, "$setOnInsert": {"created_at": datetime.utcnow()}},
            upsert=True,
        )
        app.logger.info("Updated settings (%s)", ", ".join(sorted(flattened)))
        return jsonify({"message": "Settings updated.", "settings": current_settings()})

    # --- ROUTES ---

    @app.route("/")
    def index():
        return jsonify({"message": "Hello, everyone. The server is running."})

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/api/images/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    # Website heading
    @app.route("/web-heading", methods=["GET"])
    def get_web_heading():
        return jsonify([serialize_document(document) for document in store.heading.find()])

    @app.route("/web-heading", methods=["PATCH"])
    @verify_admin
    def update_web_heading():
        heading = validate_payload(HeadingUpdate, request.get_json(silent=True))
        updates = changed_fields(heading)
        updates["updated_at"] = datetime.utcnow()
        document = store.heading.find_one_and_update(
            {"_id": HEADING_ID},
            {"$set": updates, "$setOnInsert": {"created_at": datetime.utcnow()}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return jsonify({"message": "Heading updated.", "heading": serialize_document(document)})

    # Products
    @app.route("/products", methods=["GET"])
    def list_products():
        return list_response("products", "products", build_product_query(), PRODUCT_FIELDS)

    @app.route("/search", methods=["GET"])
    def search_products():
        search_term = (request.args.get("q") or "").strip()
        if not search_term:
            raise ValidationError("Provide a search term with the 'q' parameter.")
        query = text_search(search_term, PRODUCT_SEARCH_FIELDS)
        return list_response("products", "products", query, PRODUCT_FIELDS)

    @app.route("/get-product/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document = fetch_document("products", product_id, "product")
        return jsonify({"product": serialize_document(product_document)})

    @app.route("/product", methods=["POST"])
    @verify_admin
    def create_product():
        product = validate_payload(ProductCreate, request_payload(PRODUCT_LIST_FIELDS))

        image_files = request.files.getlist("images")
        if not image_files and request.files.get("image"):
            image_files = [request.files["image"]]
        saved_filenames = save_images(image_files)

        product_document = product.model_dump()
        product_document["price"] = round(product.price, 2)
        product_document["images"] = [build_upload_url(name) for name in saved_filenames]
        product_document["image_filenames"] = saved_filenames
        product_document["created_by"] = requester_email()

        created = insert_with_images("products", product_document, saved_filenames)
        app.logger.info(
            "Created product %s with %d image(s)", created["_id"], len(saved_filenames)
        )
        return (
            jsonify(
                {
                    "message": "Product added successfully.",
                    "product": serialize_document(created),
                }
            ),
            201,
        )

    @app.route("/product/<product_id>", methods=["PATCH"])
    @verify_admin
    def update_product(product_id: str):
        product = validate_payload(ProductUpdate, request.get_json(silent=True))
        updates = changed_fields(product)
        if "price" in updates:
            updates["price"] = round(updates["price"], 2)
        product_document = update_document("products", product_id, "product", updates)
        return jsonify({"message": "Product updated.", "product": serialize_document(product_document)})

    @app.route("/product/<product_id>", methods=["DELETE"])
    @verify_admin
    def delete_product(product_id: str):
        return delete_document("products", product_id, "product")

    # Categories
    @app.route("/categories", methods=["GET"])
    def list_categories():
        query: Dict = {}
        demographic = (request.args.get("demographic") or "").strip()
        if demographic:
            query["demographic"] = exact_match(demographic)
        return list_response("categories", "categories", query, CATEGORY_FIELDS)

    @app.route("/category/<category_id>", methods=["GET"])
    def get_category(category_id: str):
        category_document = fetch_document("categories", category_id, "category")
        return jsonify({"category": serialize_document(category_document)})

    @app.route("/categories", methods=["POST"])
    @verify_admin
    def create_category():
        category = validate_payload(CategoryCreate, request_payload())
        image_file = request.files.get("image")
        saved_filename = save_image(image_file) if image_file else None

        category_document = category.model_dump()
        category_document["route"] = slugify(category.route or category.title)
        category_document["image"] = build_upload_url(saved_filename)
        if saved_filename:
            category_document["image_filename"] = saved_filename

        created = insert_with_images(
            "categories", category_document, [saved_filename] if saved_filename else []
        )
        app.logger.info("Created category %s (%s)", created["_id"], category.title)
        return (
            jsonify(
                {
                    "message": "Category created successfully.",
                    "category": serialize_document(created),
                }
            ),
            201,
        )

    @app.route("/category/<category_id>", methods=["PATCH"])
    @verify_admin
    def update_category(category_id: str):
        category = validate_payload(CategoryUpdate, request.get_json(silent=True))
        updates = changed_fields(category)
        if "route" in updates:
            updates["route"] = slugify(updates["route"])
        category_document = update_document("categories", category_id, "category", updates)
        return jsonify({"message": "Category updated.", "category": serialize_document(category_document)})

    @app.route("/category/<category_id>", methods=["DELETE"])
    @verify_admin
    def delete_category(category_id: str):
        return delete_document("categories", category_id, "category")

    # Sliders
    @app.route("/sliders", methods=["GET"])
    def list_sliders():
        return list_response("sliders", "sliders", {}, SLIDER_FIELDS)

    @app.route("/slider/<slider_id>", methods=["GET"])
    def get_slider(slider_id: str):
        slider_document = fetch_document("sliders", slider_id, "slider")
        return jsonify({"slider": serialize_document(slider_document)})

    @app.route("/sliders", methods=["POST"])
    @verify_admin
    def create_slider():
        slider = validate_payload(SliderCreate, request_payload())
        saved_filename = save_image(request.files.get("image"))

        slider_document = slider.model_dump()
        slider_document["image"] = build_upload_url(saved_filename)
        slider_document["image_filename"] = saved_filename

        created = insert_with_images("sliders", slider_document, [saved_filename])
        app.logger.info("Created slider %s", created["_id"])
        return (
            jsonify({"message": "Slider added successfully.", "slider": serialize_document(created)}),
            201,
        )

    @app.route("/slider/<slider_id>", methods=["PATCH"])
    @verify_admin
    def update_slider(slider_id: str):
        slider = validate_payload(SliderUpdate, request.get_json(silent=True))
        slider_document = update_document("sliders", slider_id, "slider", changed_fields(slider))
        return jsonify({"message": "Slider updated.", "slider": serialize_document(slider_document)})

    @app.route("/slider/<slider_id>", methods=["DELETE"])
    @verify_admin
    def delete_slider(slider_id: str):
        return delete_document("sliders", slider_id, "slider")

    # Users
    @app.route("/user", methods=["PUT"])
    def upsert_user():
        profile = validate_payload(UserUpsert, request.get_json(silent=True))
        email = profile.email
        fields = profile.model_dump(exclude_unset=True, exclude_none=True)
        fields.pop("email", None)
        now = datetime.utcnow()
        fields["updated_at"] = now

        result = store.users.update_one(
            {"email": email},
            {
                "$set": fields,
                "$setOnInsert": {
                    "role": ROLE_CUSTOMER,
                    "created_at": now,
                    "seq": store.next_sequence("users"),
                },
            },
            upsert=True,
        )
        created = result.upserted_id is not None
        if created:
            app.logger.info("Registered user %s", email)

        user_document = store.users.find_one({"email": email})
        return jsonify(
            {
                "user": serialize_user(user_document),
                "created": created,
                "token": issue_token(email),
            }
        )

    @app.route("/is-admin/<email>", methods=["GET"])
    def is_admin(email: str):
        return jsonify({"isAdmin": is_admin_email(normalize_email(email))})

    def change_role(desired_role: str):
        target = validate_payload(RoleChange, request.get_json(silent=True))
        user_document = store.users.find_one({"email": target.email})
        if not user_document:
            raise NotFound("User not found.")

        default_admin = app.config.get("DEFAULT_ADMIN_EMAIL")
        if desired_role != ROLE_ADMIN and default_admin and target.email == default_admin:
            raise ValidationError("The default administrator must remain an admin.")

        result = store.users.update_one(
            {"_id": user_document["_id"]},
            {"$set": {"role": desired_role, "updated_at": datetime.utcnow()}},
        )
        app.logger.info(
            "%s set role of %s to %s", requester_email(), target.email, desired_role
        )
        updated_user = store.users.find_one({"_id": user_document["_id"]})
        return jsonify(
            {
                "message": f"Role updated to {desired_role}.",
                "modifiedCount": result.modified_count,
                "user": serialize_user(updated_user),
            }
        )

    @app.route("/make-admin", methods=["PATCH"])
    @verify_admin
    def make_admin():
        return change_role(ROLE_ADMIN)

    @app.route("/delete-admin", methods=["PATCH"])
    @verify_admin
    def delete_admin():
        return change_role(ROLE_CUSTOMER)

    @app.route("/users", methods=["GET"])
    @verify_admin
    def list_users():
        limit, page, skip = read_paging()
        users = store.latest("users", limit=limit, skip=skip)
        return jsonify(
            {
                "users": [serialize_user(user) for user in users],
                "total": store.count("users"),
                "page": page,
                "limit": limit,
            }
        )

    # Orders
    @app.route("/order", methods=["POST"])
    @verify_token
    def create_order():
        order = validate_payload(OrderCreate, request.get_json(silent=True))
        requester = requester_email()

        delivery = order.delivery.model_dump(exclude_none=True)
        delivery.setdefault("email", requester)
        if delivery["email"] != requester:
            raise ValidationError("The delivery email must match the signed-in account.")

        now = datetime.utcnow()
        order_document = {
            "items": [item.model_dump(exclude_none=True) for item in order.items],
            "delivery": delivery,
            "payment": order.payment.model_dump(),
            "total": round(order.total, 2),
            "status": INITIAL_STATUS,
            "placed_at": now,
            "placed_date": now.date().isoformat(),
            "status_history": [{"status": INITIAL_STATUS, "at": now, "by": requester}],
        }
        created = store.insert("orders", order_document)
        app.logger.info("Order %s placed by %s", created["_id"], requester)
        return (
            jsonify({"message": "Order placed successfully.", "order": serialize_document(created)}),
            201,
        )

    @app.route("/my-orders", methods=["GET"])
    @verify_token
    def list_my_orders():
        return list_response("orders", "orders", {"delivery.email": requester_email()})

    @app.route("/orders", methods=["GET"])
    @verify_admin
    def list_all_orders():
        query: Dict = {}
        for parameter, field in ORDER_FILTERS.items():
            value = (request.args.get(parameter) or "").strip()
            if not value:
                continue
            if parameter == "status":
                value = canonical_status(value)
            elif parameter == "delivery_email":
                value = normalize_email(value)
            query[field] = value

        search_term = (request.args.get("search") or "").strip()
        if search_term:
            query["$or"] = [{field: search_term} for field in ORDER_FILTERS.values()]
            query["$or"].append({"delivery.email": normalize_email(search_term)})
            status = CANONICAL_STATUSES.get(search_term.lower())
            if status:
                query["$or"].append({"status": status})

        return list_response("orders", "orders", query)

    @app.route("/order/<order_id>", methods=["GET"])
    @verify_token
    def get_order(order_id: str):
        order_document = fetch_document("orders", order_id, "order")
        requester = requester_email()
        owner = (order_document.get("delivery") or {}).get("email")
        if owner != requester and not is_admin_email(requester):
            raise Forbidden("You can only view your own orders.")
        return jsonify({"order": serialize_document(order_document)})

    @app.route("/update-order-status/<order_id>", methods=["PATCH"])
    @verify_admin
    def update_order_status(order_id: str):
        requested = validate_payload(StatusUpdate, request.get_json(silent=True))
        order_document = fetch_document("orders", order_id, "order")
        current_status = order_document.get("status")
        target_status = check_transition(current_status, requested.status)

        if current_status == target_status:
            return jsonify(
                {
                    "message": f"Order is already {target_status}.",
                    "modifiedCount": 0,
                    "order": serialize_document(order_document),
                }
            )

        now = datetime.utcnow()
        updated = store.orders.find_one_and_update(
            {"_id": order_document["_id"], "status": current_status},
            {
                "$set": {"status": target_status, "updated_at": now},
                "$push": {
                    "status_history": {
                        "status": target_status,
                        "at": now,
                        "by": requester_email(),
                    }
                },
            },
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise Conflict("The order status changed while updating. Reload and retry.")

        app.logger.info(
            "Order %s moved from %s to %s", order_id, current_status, target_status
        )
        return jsonify(
            {
                "message": f"Order status updated to {target_status}.",
                "modifiedCount": 1,
                "order": serialize_document(updated),
            }
        )

    # Reporting
    @app.route("/report", methods=["GET"])
    @verify_admin
    def report():
        recent_limit = min(
            parse_int_arg("limit", app.config["REPORT_RECENT_LIMIT"], minimum=1),
            MAX_PAGE_SIZE,
        )
        today = datetime.utcnow().date().isoformat()
        return jsonify(
            {
                "totalUsers": store.count("users"),
                "totalOrders": store.count("orders"),
                "totalProducts": store.count("products"),
                "totalCategories": store.count("categories"),
                "todayOrders": store.count("orders", {"placed_date": today}),
                "deliveredOrders": store.count("orders", {"status": STATUS_DELIVERED}),
                "recentUsers": [
                    serialize_user(user)
                    for user in store.latest("users", limit=recent_limit)
                ],
                "recentOrders": [
                    serialize_document(order)
                    for order in store.latest("orders", limit=recent_limit)
                ],
            }
        )

    # Settings
    @app.route("/settings", methods=["GET"])
    def get_settings():
        return jsonify({"settings": current_settings()})

    @app.route("/settings", methods=["PATCH"])
    @verify_admin
    def update_settings():
        settings = validate_payload(SettingsUpdate, request.get_json(silent=True))
        return merge_settings(changed_fields(settings))

    @app.route("/settings/<section>", methods=["PATCH"])
    @verify_admin
    def update_settings_section(section: str):
        try:
            schema, nested_key = SETTINGS_SECTIONS[section]
        except KeyError:
            raise NotFound(
                f"Unknown settings section. Use one of: {', '.join(SETTINGS_SECTIONS)}."
            )
        updates = changed_fields(validate_payload(schema, request.get_json(silent=True)))
        if nested_key:
            updates = {nested_key: updates}
        return merge_settings(updates)

    return app


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        return error.to_response()

    @app.errorhandler(PyMongoError)
    def handle_store_error(error: PyMongoError):
        if getattr(error, "timeout", False):
            app.logger.warning("Store operation timed out: %s", error)
            return RequestTimeout(
                "The data store did not answer in time. Please retry."
            ).to_response()
        app.logger.exception("Store operation failed: %s", error)
        return UpstreamError().to_response()

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return (
            jsonify(
                {
                    "error": (error.name or "HTTPError").replace(" ", ""),
                    "message": error.description,
                }
            ),
            error.code or 500,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        app.logger.exception(
            "Unhandled error on %s %s", request.method, request.path
        )
        return (
            jsonify({"error": "InternalError", "message": "An unexpected error occurred."}),
            500,
        )
