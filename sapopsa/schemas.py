"""
Payload schemas for the storefront API

Each model validates one request body before anything reaches the store.
Unknown fields are rejected so clients cannot write arbitrary keys (or a role)
into documents.
"""
import json
from typing import Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .auth import is_valid_email, normalize_email
from .errors import ValidationError, pydantic_details

ModelT = TypeVar("ModelT", bound=BaseModel)


class Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def validate_payload(model: Type[ModelT], data) -> ModelT:
    if not isinstance(data, dict):
        raise ValidationError("A JSON object body is required.")
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid request payload.", details=pydantic_details(exc))


def changed_fields(model: BaseModel) -> Dict:
    updates = model.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise ValidationError("Provide at least one field to update.")
    return updates


def parse_json_list(value) -> List:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [item for item in value]
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            value = ""
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return []
        try:
            parsed = json.loads(candidate)
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, ValueError):
            pass
        if "," in candidate:
            return [item.strip() for item in candidate.split(",") if item and item.strip()]
        return [candidate]
    return []


def form_payload(form, list_fields=()) -> Dict:
    """Turn multipart form fields into a plain dict.

    List fields may arrive as a JSON array, comma separated text or repeated
    form keys.
    """
    payload: Dict = {}
    for key in form.keys():
        values = form.getlist(key)
        if key in list_fields:
            items: List = []
            for value in values:
                items.extend(parse_json_list(value))
            payload[key] = items
        else:
            payload[key] = values[-1] if values else ""
    return payload


# Users

def _email(value):
    if not is_valid_email(value):
        raise ValueError("A valid email address is required.")
    return normalize_email(value)


class UserUpsert(Payload):
    email: str
    name: Optional[str] = Field(None, max_length=120)
    phone: Optional[str] = Field(None, max_length=40)
    photo_url: Optional[str] = None
    address: Optional[str] = Field(None, max_length=500)

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        return _email(value)


class RoleChange(Payload):
    email: str

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        return _email(value)


# Catalog

class ProductCreate(Payload):
    title: str = Field(..., min_length=1, max_length=200)
    price: float = Field(..., ge=0, allow_inf_nan=False)
    category: str = ""
    demographic: str = ""
    description: str = ""
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    specifications: List[str] = Field(default_factory=list)


class ProductUpdate(Payload):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    category: Optional[str] = None
    demographic: Optional[str] = None
    description: Optional[str] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    specifications: Optional[List[str]] = None


PRODUCT_LIST_FIELDS = ("sizes", "colors", "specifications")


class CategoryCreate(Payload):
    title: str = Field(..., min_length=2, max_length=120)
    demographic: str = ""
    route: str = ""


class CategoryUpdate(Payload):
    title: Optional[str] = Field(None, min_length=2, max_length=120)
    demographic: Optional[str] = None
    route: Optional[str] = None


class SliderCreate(Payload):
    title: str = ""


class SliderUpdate(Payload):
    title: Optional[str] = None


class HeadingUpdate(Payload):
    title: Optional[str] = None
    subtitle: Optional[str] = None


# Settings

class DisplaySettings(Payload):
    show_heading: Optional[bool] = None
    show_slider: Optional[bool] = None
    show_categories: Optional[bool] = None
    show_products: Optional[bool] = None


class ContactSettings(Payload):
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class NavbarSettings(Payload):
    navbar_title: str


class AboutSettings(Payload):
    about_us: str


class TermsSettings(Payload):
    terms: str


class SettingsUpdate(Payload):
    navbar_title: Optional[str] = None
    display: Optional[DisplaySettings] = None
    about_us: Optional[str] = None
    terms: Optional[str] = None
    contact: Optional[ContactSettings] = None


# section name -> (schema, nested document key or None)
SETTINGS_SECTIONS = {
    "navbar": (NavbarSettings, None),
    "display": (DisplaySettings, "display"),
    "about-us": (AboutSettings, None),
    "terms": (TermsSettings, None),
    "contact": (ContactSettings, "contact"),
}

DEFAULT_SETTINGS = {
    "navbar_title": "",
    "display": {
        "show_heading": True,
        "show_slider": True,
        "show_categories": True,
        "show_products": True,
    },
    "about_us": "",
    "terms": "",
    "contact": {"email": "", "phone": "", "address": ""},
}


def flatten_updates(updates: Dict, prefix: str = "") -> Dict:
    """Dotted ``$set`` keys so nested objects merge field by field."""
    flattened: Dict = {}
    for key, value in updates.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            flattened.update(flatten_updates(value, f"{path}."))
        else:
            flattened[path] = value
    return flattened


# Orders

class OrderItem(Payload):
    title: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    image: str = ""
    product_id: Optional[str] = None
    price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)


class Delivery(Payload):
    email: Optional[str] = None
    phone: str = Field(..., min_length=3, max_length=40)
    name: Optional[str] = None
    address: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        if value is None or value == "":
            return None
        return _email(value)


class Payment(Payload):
    transaction_id: str = Field(..., min_length=1)


class OrderCreate(Payload):
    items: List[OrderItem] = Field(..., min_length=1)
    delivery: Delivery
    payment: Payment
    total: float = Field(..., ge=0, allow_inf_nan=False)


class StatusUpdate(Payload):
    status: str = Field(..., min_length=1)
