"""
Gateway Response Classifier
===========================
Decides whether a gateway body is a successful lookup and pulls normalized
RC / FASTag / Challan data out of it.

The provider's envelope differs by service and has drifted over time:

    {"success": true, "data": {...}}
    {"status": "success", "response": {...}}
    {"statusCode": 200, "body": {"status": "success", "response": {...}}}
    {"balance": 450, "tag_status": "ACTIVE"}            (bare payload)
    {"error": "Vehicle not found"}

Classification is an ordered chain of predicates. Each one either decides
(True / False) or passes (None) to the next; the first decision wins.
Extraction is table driven: every normalized field lists the upstream
aliases it may arrive under.
"""

import enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.utils.normalizers import (
    first_non_empty,
    is_blank,
    to_bool,
    to_float,
    to_int,
    to_iso_date,
    to_str,
)


# Keys whose non-empty value marks a data-bearing envelope
DATA_CONTAINER_KEYS = ("data", "result", "payload", "response")

# Where extraction looks for the domain object, first match wins
EXTRACTION_CONTAINER_KEYS = ("response", "data", "result")

NEGATIVE_STATUS_WORDS = {"error", "failed", "failure", "fail", "invalid", "not_found"}
PROCESSING_STATUS_WORDS = {"processing", "pending", "in_progress", "queued", "accepted"}

# Fields characteristic of each domain when the provider omits any status flag
DOMAIN_SIGNATURE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "fastag": (
        "tag_status", "balance", "tagId", "tag_id", "linked",
        "vehicle_number", "vehicleNumber",
    ),
    "rc": (
        "owner_name", "chassis_number", "chassis_no", "engine_number",
        "rc_number", "registration_number", "license_plate", "brand_model",
        "registration_date",
    ),
    "challans": (
        "challans", "challan_list", "challanList", "total_challans", "challan_count",
    ),
}


class EnvelopeShape(str, enum.Enum):
    """Known upstream envelope shapes"""
    LAMBDA_PROXY = "lambda_proxy"  # {"statusCode": ..., "body": {...}}
    FLAGGED = "flagged"  # carries success / status
    CONTAINER = "container"  # data under data/result/payload/response
    BARE = "bare"  # domain fields at the root
    EMPTY = "empty"  # nothing parseable


@dataclass(frozen=True)
class ClassificationInput:
    body: Dict[str, Any]
    layers: Tuple[Dict[str, Any], ...]  # root, then nested body when present
    container: Dict[str, Any]
    http_ok: bool
    service: str


@dataclass(frozen=True)
class Classification:
    success: bool
    rule: str
    shape: EnvelopeShape


# ==========================================
# Envelope helpers
# ==========================================

def unwrap_envelope(body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Inner object of a Lambda proxy envelope, or the body itself"""
    if not isinstance(body, dict):
        return {}
    nested = body.get("body")
    if isinstance(nested, dict):
        return nested
    return body


def envelope_layers(body: Optional[Dict[str, Any]]) -> Tuple[Dict[str, Any], ...]:
    if not isinstance(body, dict):
        return ()
    nested = body.get("body")
    if isinstance(nested, dict):
        return (body, nested)
    return (body,)


def data_container(body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Domain object: first of response / data / result inside the unwrapped
    envelope, else the unwrapped envelope itself. A list container is
    presented as {"items": [...]}.
    """
    inner = unwrap_envelope(body)
    for key in EXTRACTION_CONTAINER_KEYS:
        value = inner.get(key)
        if isinstance(value, dict) and value:
            return value
        if isinstance(value, list):
            return {"items": value}
    return inner


def detect_envelope(body: Optional[Dict[str, Any]]) -> EnvelopeShape:
    if not isinstance(body, dict) or not body:
        return EnvelopeShape.EMPTY
    if isinstance(body.get("body"), dict):
        return EnvelopeShape.LAMBDA_PROXY
    if "success" in body or isinstance(body.get("status"), str):
        return EnvelopeShape.FLAGGED
    if any(key in body for key in DATA_CONTAINER_KEYS):
        return EnvelopeShape.CONTAINER
    return EnvelopeShape.BARE


def _status_word(layer: Dict[str, Any]) -> Optional[str]:
    status = layer.get("status")
    if isinstance(status, str):
        return status.strip().lower()
    return None


# ==========================================
# Predicate chain
# ==========================================

def _explicit_success_flag(ctx: ClassificationInput) -> Optional[bool]:
    if any(layer.get("success") is True for layer in ctx.layers):
        return True
    return None


def _success_status_string(ctx: ClassificationInput) -> Optional[bool]:
    if any(_status_word(layer) == "success" for layer in ctx.layers):
        return True
    return None


def _explicit_negative(ctx: ClassificationInput) -> Optional[bool]:
    for layer in ctx.layers:
        if layer.get("success") is False:
            return False
        if layer.get("error"):
            return False
        # An accepted-but-processing lookup is not a result yet
        if _status_word(layer) in NEGATIVE_STATUS_WORDS | PROCESSING_STATUS_WORDS:
            return False
    status_code = ctx.body.get("statusCode")
    if isinstance(status_code, int) and status_code >= 400:
        return False
    return None


def _ok_with_data_container(ctx: ClassificationInput) -> Optional[bool]:
    if not ctx.http_ok:
        return None
    for layer in ctx.layers:
        for key in DATA_CONTAINER_KEYS:
            if not is_blank(layer.get(key)):
                return True
    return None


def _domain_fields_present(ctx: ClassificationInput) -> Optional[bool]:
    signature = DOMAIN_SIGNATURE_FIELDS.get(ctx.service, ())
    if any(key in ctx.container for key in signature):
        return True
    return None


def _error_or_message(ctx: ClassificationInput) -> Optional[bool]:
    # Runs ahead of the data and domain-field rules: an error reply may echo the plate
    if any(not is_blank(layer.get("error")) or not is_blank(layer.get("message")) for layer in ctx.layers):
        return False
    return None


CLASSIFIER_CHAIN: Tuple[Tuple[str, Callable[[ClassificationInput], Optional[bool]]], ...] = (
    ("success_flag", _explicit_success_flag),
    ("status_success", _success_status_string),
    ("explicit_negative", _explicit_negative),
    ("error_or_message", _error_or_message),
    ("ok_with_data", _ok_with_data_container),
    ("domain_fields", _domain_fields_present),
)


def classify(parsed_body: Optional[Dict[str, Any]], http_ok: bool, service: str) -> Classification:
    """Run the predicate chain; no decision means failure"""
    shape = detect_envelope(parsed_body)
    if shape == EnvelopeShape.EMPTY:
        return Classification(False, "empty_body", shape)

    ctx = ClassificationInput(
        body=parsed_body,
        layers=envelope_layers(parsed_body),
        container=data_container(parsed_body),
        http_ok=http_ok,
        service=service,
    )
    for rule, predicate in CLASSIFIER_CHAIN:
        verdict = predicate(ctx)
        if verdict is not None:
            return Classification(verdict, rule, shape)
    return Classification(False, "no_signal", shape)


def is_success(parsed_body: Optional[Dict[str, Any]], http_ok: bool, service: str) -> bool:
    return classify(parsed_body, http_ok, service).success


def is_processing(parsed_body: Optional[Dict[str, Any]]) -> bool:
    """Gateway accepted the lookup and will report through the webhook"""
    if not isinstance(parsed_body, dict):
        return False
    if not extract_request_id(parsed_body):
        return False
    return any(_status_word(layer) in PROCESSING_STATUS_WORDS for layer in envelope_layers(parsed_body))


def extract_request_id(parsed_body: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(parsed_body, dict):
        return None
    for layer in (*envelope_layers(parsed_body), data_container(parsed_body)):
        value = first_non_empty(layer, ("request_id", "requestId"))
        if value is not None:
            return str(value)
    return None


def _error_text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return to_str(first_non_empty(value, ("message", "error", "detail", "description")))
    if isinstance(value, bool):
        return None
    return to_str(value)


def failure_reason(
    parsed_body: Optional[Dict[str, Any]],
    raw_body: str = "",
    status_code: Optional[int] = None,
) -> str:
    """Human readable upstream error: error, then message, then nested body"""
    for layer in envelope_layers(parsed_body):
        for key in ("error", "message"):
            text = _error_text(layer.get(key))
            if text:
                return text
    if parsed_body is None and raw_body and raw_body.strip():
        return f"Upstream error {status_code}: {raw_body.strip()[:200]}"
    return f"Upstream error {status_code}"


# ==========================================
# Extraction tables
# ==========================================

FASTAG_ALIASES: Dict[str, Tuple[str, ...]] = {
    "balance": ("balance", "current_balance", "wallet_balance", "fastag_balance", "available_balance"),
    "linked": ("linked", "is_linked", "fastag_linked", "tag_linked"),
    "tagId": ("tag_id", "tagId", "fastag_id", "tag_number", "tagNumber"),
    "status": ("tag_status", "tagStatus", "fastag_status"),
    "bankName": ("bank_name", "bankName", "issuer_bank", "issuerBank", "bank"),
    "vehicleNumber": ("vehicle_number", "vehicleNumber", "vehicleId", "vehicle_no", "rc_number"),
    "vehicleClass": ("vehicle_class", "vehicleClass", "class"),
    "lastTransactionDate": ("last_transaction_date", "lastTransactionDate", "last_txn_date"),
    "requestId": ("request_id", "requestId"),
}

RC_ALIASES: Dict[str, Tuple[str, ...]] = {
    "number": ("license_plate", "rc_number", "registration_number", "vehicle_number"),
    "ownerName": ("owner_name", "owner", "ownerName"),
    "make": ("brand_name", "make", "Make", "maker"),
    "model": ("brand_model", "model", "Model", "maker_model"),
    "year": ("manufacturing_year", "mfg_year", "year"),
    "fuelType": ("fuel_type", "fuel", "fuelType"),
    "vehicleClass": ("class", "vehicle_class", "vehicleClass"),
    "registrationDate": ("registration_date", "regn_dt", "registrationDate"),
    "registrationAuthority": ("registering_authority", "rto", "registration_authority"),
    "chassisNumber": ("chassis_number", "chassis_no", "chassisNo", "chassis"),
    "engineNumber": ("engine_number", "engine_no", "engineNo", "engine"),
    "fitnessExpiry": ("fitness_upto", "fitnessExpiry", "fitness_valid_upto"),
    "puccExpiry": ("pucc_upto", "puc_valid_upto", "puccExpiry", "pollution_expiry"),
    "insuranceExpiry": ("insurance_expiry", "insurance_valid_upto", "insuranceExpiry", "insurance_upto"),
    "insuranceCompany": ("insurance_company", "insurer", "insuranceCompany"),
    "permanentAddress": ("permanent_address", "permanentAddress", "address"),
    "financer": ("financer", "financier", "financer_name"),
    "isFinanced": ("is_financed", "isFinanced", "financed"),
    "rcStatus": ("rc_status", "rcStatus", "status_as_on"),
}

RC_DATE_FIELDS = ("registrationDate", "fitnessExpiry", "puccExpiry", "insuranceExpiry")

CHALLAN_LIST_ALIASES = ("challans", "challan_list", "challanList", "items", "records")

CHALLAN_ALIASES: Dict[str, Tuple[str, ...]] = {
    "challanNumber": ("challan_no", "challan_number", "challanNo", "challanNumber", "id"),
    "date": ("challan_date", "challanDate", "date", "offence_date", "violation_date"),
    "amount": ("amount", "fine_amount", "penalty_amount", "challan_amount", "fine"),
    "status": ("challan_status", "challanStatus", "payment_status", "status"),
    "offence": ("offence", "offense", "offence_details", "violation", "offences"),
    "location": ("location", "place", "challan_place", "area"),
    "state": ("state", "state_code"),
    "paymentUrl": ("payment_url", "paymentUrl", "pay_url"),
}

UNPAID_CHALLAN_WORDS = {"pending", "unpaid", "due", "open", "not paid"}


def _amount(value: Any, default: float = 0) -> Any:
    number = to_float(value, None)
    if number is None:
        return default
    return int(number) if number.is_integer() else number


def extract_fastag(parsed_body: Optional[Dict[str, Any]], vehicle_number: str) -> Dict[str, Any]:
    container = data_container(parsed_body)
    root = unwrap_envelope(parsed_body)

    status = to_str(first_non_empty(container, FASTAG_ALIASES["status"]))
    # A bare "status" is only the tag status when it is not the envelope flag
    if status is None and container is not root:
        status = to_str(container.get("status"))

    linked = to_bool(first_non_empty(container, FASTAG_ALIASES["linked"]))
    if linked is None:
        linked = bool(status) and status.strip().lower() == "active"

    return {
        "balance": _amount(first_non_empty(container, FASTAG_ALIASES["balance"])),
        "linked": linked,
        "tagId": to_str(first_non_empty(container, FASTAG_ALIASES["tagId"])),
        "status": status or "unknown",
        "bankName": to_str(first_non_empty(container, FASTAG_ALIASES["bankName"])),
        "vehicleNumber": to_str(first_non_empty(container, FASTAG_ALIASES["vehicleNumber"])) or vehicle_number,
        "vehicleClass": to_str(first_non_empty(container, FASTAG_ALIASES["vehicleClass"])),
        "lastTransactionDate": to_str(first_non_empty(container, FASTAG_ALIASES["lastTransactionDate"])),
        "requestId": extract_request_id(parsed_body),
    }


def extract_rc(parsed_body: Optional[Dict[str, Any]], vehicle_number: str) -> Dict[str, Any]:
    container = data_container(parsed_body)

    data: Dict[str, Any] = {}
    for field_name, aliases in RC_ALIASES.items():
        data[field_name] = first_non_empty(container, aliases)

    for field_name in RC_DATE_FIELDS:
        data[field_name] = to_iso_date(data[field_name])

    data["number"] = to_str(data["number"]) or vehicle_number
    data["year"] = to_int(data["year"])
    data["isFinanced"] = bool(to_bool(data["isFinanced"], False)) or bool(to_str(data["financer"]))
    for field_name in (
        "ownerName", "make", "model", "fuelType", "vehicleClass", "registrationAuthority",
        "chassisNumber", "engineNumber", "insuranceCompany", "permanentAddress",
        "financer", "rcStatus",
    ):
        data[field_name] = to_str(data[field_name])

    return data


def _normalize_challan(item: Dict[str, Any]) -> Dict[str, Any]:
    offence = first_non_empty(item, CHALLAN_ALIASES["offence"])
    if isinstance(offence, list):
        parts = [
            to_str(first_non_empty(o, ("offence_name", "name", "description"))) if isinstance(o, dict) else to_str(o)
            for o in offence
        ]
        offence = ", ".join(p for p in parts if p)

    return {
        "challanNumber": to_str(first_non_empty(item, CHALLAN_ALIASES["challanNumber"])),
        "date": to_iso_date(first_non_empty(item, CHALLAN_ALIASES["date"])),
        "amount": _amount(first_non_empty(item, CHALLAN_ALIASES["amount"])),
        "status": to_str(first_non_empty(item, CHALLAN_ALIASES["status"])) or "unknown",
        "offence": to_str(offence),
        "location": to_str(first_non_empty(item, CHALLAN_ALIASES["location"])),
        "state": to_str(first_non_empty(item, CHALLAN_ALIASES["state"])),
        "paymentUrl": to_str(first_non_empty(item, CHALLAN_ALIASES["paymentUrl"])),
    }


def extract_challans(parsed_body: Optional[Dict[str, Any]], vehicle_number: str) -> Dict[str, Any]:
    container = data_container(parsed_body)

    raw_list: List[Any] = []
    for key in CHALLAN_LIST_ALIASES:
        value = container.get(key)
        if isinstance(value, list):
            raw_list = value
            break

    challans = [_normalize_challan(item) for item in raw_list if isinstance(item, dict)]
    pending = [c for c in challans if (c["status"] or "").lower() in UNPAID_CHALLAN_WORDS]

    total = to_int(first_non_empty(container, ("total_challans", "totalChallans", "challan_count", "count")))

    return {
        "vehicleNumber": to_str(first_non_empty(container, ("vehicle_number", "vehicleNumber", "rc_number"))) or vehicle_number,
        "challans": challans,
        "totalChallans": total if total is not None else len(challans),
        "pendingCount": len(pending),
        "totalAmount": _amount(sum(c["amount"] for c in challans)),
        "pendingAmount": _amount(sum(c["amount"] for c in pending)),
    }


EXTRACTORS: Dict[str, Callable[[Optional[Dict[str, Any]], str], Dict[str, Any]]] = {
    "rc": extract_rc,
    "fastag": extract_fastag,
    "challans": extract_challans,
}


def extract(service: str, parsed_body: Optional[Dict[str, Any]], vehicle_number: str) -> Dict[str, Any]:
    return EXTRACTORS[service](parsed_body, vehicle_number)
