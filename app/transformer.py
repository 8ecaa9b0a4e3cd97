"""Maps raw EMDEX payloads onto DrugRecord / DrugDetails.

EMDEX field names are not documented, so every field is looked up under the
handful of names seen in practice. Records that still fail validation are
dropped with a warning instead of failing the whole response.
"""

import logging
import re
import uuid

from pydantic import ValidationError

from models import DrugDetails, DrugRecord, Envelope, Ingredient

logger = logging.getLogger(__name__)

BRAND_PREFIX = "emdex_brand_"
GENERIC_PREFIX = "emdex_generic_"

INGREDIENT_PATTERN = re.compile(
    r"^(.+?)\s*[\(\[]?(\d+\.?\d*\s*(?:mg|g|ml|mcg|iu|%)?)[\)\]]?$", re.IGNORECASE
)


def unwrap_envelope(payload, list_key=None):
    if isinstance(payload, list):
        return Envelope(shape="list", items=payload)
    if not isinstance(payload, dict):
        return Envelope(shape="unknown")

    for shape in ("data", "results", list_key):
        if shape and isinstance(payload.get(shape), list):
            return Envelope(shape=shape, items=payload[shape])
    return Envelope(shape="unknown")


def extract_drug_data(payload):
    """Pull a single drug out of a details response, or None."""
    if not isinstance(payload, dict):
        return None

    if any(payload.get(k) for k in ("id", "brand_id", "generic_id")):
        return payload

    data = payload.get("data")
    if isinstance(data, list):
        return data[0] if data and isinstance(data[0], dict) else None
    if isinstance(data, dict):
        return data

    for wrapper in ("drug", "brand", "generic", "result"):
        if isinstance(payload.get(wrapper), dict):
            return payload[wrapper]

    if payload.get("success") is False or payload.get("error"):
        return None

    if any(payload.get(k) for k in ("brand_name", "generic_name", "name")):
        return payload
    return None


def _first(raw, *names):
    for name in names:
        value = raw.get(name)
        if value not in (None, ""):
            return value
    return None


def _text(raw, *names):
    value = _first(raw, *names)
    return None if value is None else str(value)


def _price(raw):
    value = _first(raw, "price", "retail_price")
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if price >= 0 else None


def parse_to_list(value):
    if not value:
        return []
    if isinstance(value, list):
        return [str(item) for item in value]
    if not isinstance(value, str):
        return []
    return [item.strip() for item in re.split(r"[,;\n]+", value) if item.strip()]


def parse_ingredient(text):
    match = INGREDIENT_PATTERN.match(text)
    if match:
        return Ingredient(name=match.group(1).strip(), amount=match.group(2).strip())
    return Ingredient(name=text)


def parse_ingredients(value):
    if not value:
        return []
    if isinstance(value, str):
        value = [part.strip() for part in re.split(r"[,;]+", value)]
    if not isinstance(value, list):
        return []

    ingredients = []
    for item in value:
        if isinstance(item, dict) and item.get("name"):
            ingredients.append(Ingredient(name=str(item["name"]), amount=_text(item, "amount", "strength")))
        elif isinstance(item, str) and item:
            ingredients.append(parse_ingredient(item))
    return ingredients


def _base_fields(raw, drug_type):
    if drug_type == "brand":
        raw_id = _first(raw, "id", "brand_id")
        brand_name = _text(raw, "brand_name", "name", "brandName")
        generic_name = _text(raw, "generic_name", "genericName", "active_ingredient")
        prefix = BRAND_PREFIX
    else:
        raw_id = _first(raw, "id", "generic_id")
        brand_name = None
        generic_name = _text(raw, "generic_name", "name", "genericName")
        prefix = GENERIC_PREFIX

    return {
        "id": f"{prefix}{raw_id if raw_id is not None else uuid.uuid4().hex[:12]}",
        "type": drug_type,
        "brand_name": brand_name,
        "generic_name": generic_name,
        "manufacturer": _text(raw, "manufacturer", "company", "mfr"),
        "strength": _text(raw, "strength", "dosage"),
        "dosage_form": _text(raw, "dosage_form", "form", "dosageForm"),
        "nafdac_number": _text(raw, "nafdac_number", "nafdac_no", "registration_number"),
        "pack_size": _text(raw, "pack_size", "packSize"),
        "category": _text(raw, "category", "therapeutic_class"),
        "description": _text(raw, "description", "indication"),
        "price": _price(raw),
        "raw_data": raw,
    }


def transform_drug(raw, drug_type):
    if not isinstance(raw, dict):
        return None
    try:
        return DrugRecord(**_base_fields(raw, drug_type))
    except ValidationError as e:
        logger.warning("Discarding %s record: %s", drug_type, e.errors()[0]["msg"])
        return None


def transform_results(payload, drug_type):
    list_key = "brands" if drug_type == "brand" else "generics"
    envelope = unwrap_envelope(payload, list_key=list_key)
    if envelope.shape == "unknown":
        return []

    records = (transform_drug(item, drug_type) for item in envelope.items)
    return [record for record in records if record is not None]


def transform_details(raw, drug_type, app_id=None):
    if not isinstance(raw, dict):
        return None
    fields = _base_fields(raw, drug_type)
    if app_id:
        fields["id"] = app_id

    fields.update(
        route=_text(raw, "route", "administration_route"),
        therapeutic_class=_text(raw, "therapeutic_class", "category"),
        storage=_text(raw, "storage", "storage_conditions"),
        last_updated=_text(raw, "last_updated", "updated_at"),
        pack_sizes=parse_to_list(_first(raw, "pack_sizes", "pack_size", "packSize")),
        active_ingredients=parse_ingredients(_first(raw, "active_ingredients", "ingredients", "composition")),
        indications=parse_to_list(_first(raw, "indications", "indication", "uses")),
        contraindications=parse_to_list(_first(raw, "contraindications", "contraindication")),
        side_effects=parse_to_list(_first(raw, "side_effects", "adverse_effects", "adverse_reactions")),
        warnings=parse_to_list(_first(raw, "warnings", "precautions", "cautions")),
    )
    try:
        return DrugDetails(**fields)
    except ValidationError as e:
        logger.warning("Discarding %s details: %s", drug_type, e.errors()[0]["msg"])
        return None


def remove_duplicates(drugs):
    seen = set()
    unique = []
    for drug in drugs:
        key = drug.nafdac_number or drug.id
        if key in seen:
            continue
        seen.add(key)
        unique.append(drug)
    return unique


def parse_app_drug_id(app_id):
    """Split "emdex_brand_123" into ("brand", "123"); None when unrecognized."""
    if not app_id:
        return None
    for drug_type, prefix in (("brand", BRAND_PREFIX), ("generic", GENERIC_PREFIX)):
        if app_id.startswith(prefix) and len(app_id) > len(prefix):
            return drug_type, app_id[len(prefix):]
    return None
