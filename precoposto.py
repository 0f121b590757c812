from __future__ import annotations

import base64
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
import hashlib
from io import BytesIO
import json
import os
from pathlib import Path
import re
import shutil
import sys
import tempfile
import threading
import time
import traceback
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

import pandas as pd
from PIL import Image
import streamlit as st
import streamlit.components.v1 as components


APP_TITLE = "PrecoPosto"
APP_VERSION = "2026.10.18.1"
DATA_DIR_ENV_VAR = "PRECOPOSTO_DATA_DIR"
APP_DATA_DIR = Path(os.environ.get(DATA_DIR_ENV_VAR, "").strip() or Path.home())
APP_SETTINGS_PATH = APP_DATA_DIR / ".precoposto_settings.json"
APP_STORAGE_PATH = APP_DATA_DIR / ".precoposto_storage.json"
APP_RUNTIME_LOG_PATH = APP_DATA_DIR / ".precoposto_runtime.log"
WEBHOOK_URL_ENV_VAR = "PRECOPOSTO_WEBHOOK_URL"
MAX_RUNTIME_LOG_LINES = 1200
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 15
MIN_WEBHOOK_TIMEOUT_SECONDS = 2
MAX_WEBHOOK_TIMEOUT_SECONDS = 60
DEFAULT_COMPETITOR_COUNT = 5
MIN_COMPETITOR_COUNT = 1
MAX_COMPETITOR_COUNT = 10
DRAFT_SCHEMA_VERSION = 3
MAX_PHOTO_BYTES = 5_000_000
ACCEPTED_PHOTO_TYPES: dict[str, str] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}
ACCEPTED_PHOTO_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
GEOLOCATION_TIMEOUT_MS = 10000

NO_DATA = "Sem dados"
PERIODS = ("Manhã", "Tarde")
NEXT_PERIOD_HINTS = {
    "Manhã": "Aguardamos o seu próximo envio para o período da tarde.",
    "Tarde": "Aguardamos o seu próximo envio amanhã, no período da manhã.",
}
FUEL_TYPES = ("etanol", "gasolinaComum", "gasolinaAditivada", "dieselS10")
FUEL_LABELS: dict[str, str] = {
    "etanol": "Etanol",
    "gasolinaComum": "Gasolina Comum",
    "gasolinaAditivada": "Gasolina Aditivada",
    "dieselS10": "Diesel S-10",
}
PAYMENT_METHODS = ("vista", "prazo")
PAYMENT_METHOD_LABELS: dict[str, str] = {
    "vista": "À Vista",
    "prazo": "A Prazo",
}
PRICE_MASK_MAX_DIGITS = 3
MAX_MASKED_PRICE = 9.99
PRICE_VALUE_PATTERN = re.compile(r"^\d(,\d{0,2})?$")
DATA_URI_PREFIX_PATTERN = re.compile(r"^data:[^,]*;base64,", re.IGNORECASE)

PAYLOAD_DATE_KEY = "Data"
PAYLOAD_TIME_KEY = "Hora"
PAYLOAD_PERIOD_KEY = "Período"
PAYLOAD_MANAGER_KEY = "Gerente"
PAYLOAD_STATION_KEY = "Posto"
PHOTO_LABEL = "Foto"
NO_CHANGE_LABEL = "Sem alteração"
LATITUDE_LABEL = "Latitude"
LONGITUDE_LABEL = "Longitude"

MANAGER_ID_STORAGE_KEY = "managerId"
STATION_ID_STORAGE_KEY = "stationId"
COMPETITOR_COUNT_STORAGE_KEY = "competitorCount"

REQUIRED_FIELD_MESSAGE = "Campo obrigatório."
INVALID_PRICE_MESSAGE = "Preço inválido. Use o formato 0,00."
REQUIRED_PHOTO_MESSAGE = "A foto da placa de preços é obrigatória."
REQUIRED_NAME_MESSAGE = "O nome é obrigatório."
DUPLICATE_NAME_MESSAGE = "Este nome já está sendo usado por outro posto no formulário."
DELIVERY_FAILURE_MESSAGE = (
    "Não foi possível enviar os dados agora. Verifique a conexão e tente novamente mais tarde."
)
UNREADABLE_PHOTO_MESSAGE = "A foto anexada não pôde ser lida. Anexe a foto novamente."

PAGE_STATE_KEY = "state::page"
LAST_OUTCOME_STATE_KEY = "state::last_outcome"
OPEN_SETTINGS_STATE_KEY = "state::open_settings"
DELIVERY_FAILURE_STATE_KEY = "state::delivery_failure"

DEFAULT_APP_SETTINGS: dict[str, Any] = {
    "await_delivery": True,
    "photo_always_required": False,
    "capture_location": False,
    "webhook_timeout_seconds": DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
    "webhook_url": "",
}

GEOLOCATION_SNIPPET = """
<script>
(function () {
  var target = window.parent || window;
  if (!navigator.geolocation) {
    return;
  }
  navigator.geolocation.getCurrentPosition(
    function (position) {
      var params = new URLSearchParams(target.location.search);
      params.set("gps_lat", position.coords.latitude.toFixed(6));
      params.set("gps_lon", position.coords.longitude.toFixed(6));
      target.history.replaceState({}, "", target.location.pathname + "?" + params.toString());
    },
    function () {},
    { enableHighAccuracy: true, timeout: __TIMEOUT_MS__, maximumAge: 60000 }
  );
})();
</script>
"""


@dataclass(frozen=True)
class Competitor:
    id: str
    name: str


@dataclass(frozen=True)
class Station:
    id: str
    name: str
    competitors: tuple[Competitor, ...]


def _roster(prefix: str, names: list[str]) -> tuple[Competitor, ...]:
    return tuple(
        Competitor(id=f"{prefix}-{position}", name=name)
        for position, name in enumerate(names, start=1)
    )


STATIONS: tuple[Station, ...] = (
    Station(
        id="posto-natureza-1",
        name="Posto Natureza 1",
        competitors=_roster(
            "concorrente-1",
            ["Concorrente 1", "Concorrente 2", "Concorrente 3", "Concorrente 4", "Concorrente 5"],
        ),
    ),
    Station(
        id="posto-natureza-2",
        name="Posto Natureza 2",
        competitors=_roster(
            "concorrente-2",
            ["Concorrente A", "Concorrente B", "Concorrente C", "Concorrente D", "Concorrente E"],
        ),
    ),
    Station(
        id="posto-natureza-3",
        name="Posto Natureza 3",
        competitors=_roster(
            "concorrente-3",
            [
                "Competidor Alpha",
                "Competidor Beta",
                "Competidor Gamma",
                "Competidor Delta",
                "Competidor Epsilon",
            ],
        ),
    ),
    Station(
        id="posto-natureza-4",
        name="Posto Natureza 4",
        competitors=_roster(
            "concorrente-4",
            ["Posto Sol", "Posto Lua", "Posto Estrela", "Posto Cometa", "Posto Planeta"],
        ),
    ),
    Station(
        id="posto-natureza-5",
        name="Posto Natureza 5",
        competitors=_roster(
            "concorrente-5",
            ["Shell", "Ipiranga", "Petrobras", "ALE", "Raízen"],
        ),
    ),
)


def empty_price_set() -> dict[str, dict[str, str]]:
    return {method: {fuel: "" for fuel in FUEL_TYPES} for method in PAYMENT_METHODS}


@dataclass
class PhotoFieldState:
    data_uri: str = ""
    file_name: str = ""
    latitude: float | None = None
    longitude: float | None = None

    @property
    def is_empty(self) -> bool:
        return not self.data_uri.strip()

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class EntityForm:
    id: str
    name: str
    prices: dict[str, dict[str, str]] = field(default_factory=empty_price_set)
    no_change: bool = False
    photo: PhotoFieldState = field(default_factory=PhotoFieldState)


@dataclass
class FormState:
    station: EntityForm
    competitors: list[EntityForm] = field(default_factory=list)
    version: int = DRAFT_SCHEMA_VERSION

    def entities(self) -> list[tuple[int | None, EntityForm]]:
        """Station first (index None), then competitors by position."""
        return [(None, self.station), *enumerate(self.competitors)]


@dataclass(frozen=True)
class Submission:
    manager_id: str
    station_id: str
    period: str
    submitted_at: datetime
    station: EntityForm
    competitors: tuple[EntityForm, ...]

    def entities(self) -> list[EntityForm]:
        return [self.station, *self.competitors]


class WebhookConfigError(RuntimeError):
    pass


class WebhookDeliveryError(RuntimeError):
    pass


# --- runtime log ---


def append_runtime_log(level: str, context: str, message: str) -> None:
    level_text = str(level).strip().upper() or "INFO"
    context_text = str(context).strip() or "runtime"
    message_text = " ".join(str(message).split())
    if not message_text:
        message_text = "(no details)"

    line = f"{datetime.now().isoformat(timespec='seconds')} [{level_text}] {context_text} :: {message_text}\n"
    log_path = APP_RUNTIME_LOG_PATH

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(line)
    except OSError:
        return

    try:
        lines = log_path.read_text(encoding="utf-8", errors="replace").splitlines()
        if len(lines) > MAX_RUNTIME_LOG_LINES:
            log_path.write_text("\n".join(lines[-MAX_RUNTIME_LOG_LINES:]) + "\n", encoding="utf-8")
    except OSError:
        pass


def log_runtime_error(context: str, exc: BaseException) -> None:
    error_summary = f"{exc.__class__.__name__}: {exc}"
    trace_text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).strip()
    if exc.__traceback__ is not None and trace_text:
        error_summary = f"{error_summary} | traceback={trace_text}"
    append_runtime_log("ERROR", context, error_summary)


def read_runtime_log_tail(max_lines: int = 120) -> list[str]:
    bounded_lines = max(1, int(max_lines))
    try:
        if not APP_RUNTIME_LOG_PATH.exists():
            return []
        log_lines = APP_RUNTIME_LOG_PATH.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return []
    return log_lines[-bounded_lines:]


def get_runtime_log_line_count() -> int:
    return len(read_runtime_log_tail(MAX_RUNTIME_LOG_LINES))


def clear_runtime_log() -> None:
    try:
        APP_RUNTIME_LOG_PATH.unlink(missing_ok=True)
    except OSError as exc:
        append_runtime_log("WARNING", "runtime_log.clear", str(exc))


# --- settings ---


def normalize_bool_setting(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "sim", "on"}:
        return True
    if text in {"0", "false", "no", "nao", "não", "off"}:
        return False
    return bool(default)


def normalize_bounded_int(value: Any, default: int, minimum: int, maximum: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        parsed = int(default)
    return min(maximum, max(minimum, parsed))


def normalize_webhook_timeout(value: Any) -> int:
    return normalize_bounded_int(
        value,
        DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        MIN_WEBHOOK_TIMEOUT_SECONDS,
        MAX_WEBHOOK_TIMEOUT_SECONDS,
    )


def normalize_competitor_count(value: Any) -> int:
    return normalize_bounded_int(
        value,
        DEFAULT_COMPETITOR_COUNT,
        MIN_COMPETITOR_COUNT,
        MAX_COMPETITOR_COUNT,
    )


def sanitize_app_settings(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "await_delivery": normalize_bool_setting(
            raw.get("await_delivery"), DEFAULT_APP_SETTINGS["await_delivery"]
        ),
        "photo_always_required": normalize_bool_setting(
            raw.get("photo_always_required"), DEFAULT_APP_SETTINGS["photo_always_required"]
        ),
        "capture_location": normalize_bool_setting(
            raw.get("capture_location"), DEFAULT_APP_SETTINGS["capture_location"]
        ),
        "webhook_timeout_seconds": normalize_webhook_timeout(raw.get("webhook_timeout_seconds")),
        "webhook_url": str(raw.get("webhook_url", "") or "").strip(),
    }


def load_app_settings(path: Path | None = None) -> dict[str, Any]:
    settings_path = path or APP_SETTINGS_PATH
    saved = load_json_dict(settings_path)
    return sanitize_app_settings(saved)


def save_app_settings(changes: dict[str, Any], path: Path | None = None) -> dict[str, Any]:
    settings_path = path or APP_SETTINGS_PATH
    merged = load_app_settings(settings_path)
    merged.update(changes)
    sanitized = sanitize_app_settings(merged)
    write_json_dict_atomic(settings_path, sanitized)
    return sanitized


# --- local on-device storage ---


def copy_file_with_retry(
    source: Path,
    destination: Path,
    retries: int = 3,
    delay_seconds: float = 0.2,
) -> None:
    attempts = max(1, int(retries))
    for attempt in range(attempts):
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination)
            return
        except OSError:
            if attempt >= attempts - 1:
                raise
            time.sleep(max(0.01, float(delay_seconds)))


def load_json_dict(path: Path) -> dict[str, Any]:
    backup_path = path.with_suffix(f"{path.suffix}.bak")

    for candidate in (path, backup_path):
        if not candidate.exists():
            continue
        try:
            loaded = json.loads(candidate.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            continue
        if not isinstance(loaded, dict):
            continue
        if candidate == backup_path:
            # Primary file is missing or corrupt; restore it from the backup copy.
            try:
                write_json_dict_atomic(path, loaded, keep_backup=False)
            except OSError as exc:
                log_runtime_error("storage.self_heal", exc)
        return loaded
    return {}


def write_json_dict_atomic(
    path: Path,
    payload: dict[str, Any],
    *,
    keep_backup: bool = True,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_name = tempfile.mkstemp(
        prefix=f"{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8") as temp_file:
            json.dump(payload, temp_file, indent=2)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        if keep_backup and path.exists():
            try:
                copy_file_with_retry(path, path.with_suffix(f"{path.suffix}.bak"), retries=2, delay_seconds=0.08)
            except OSError as exc:
                log_runtime_error("storage.backup", exc)
        os.replace(temp_name, path)
    finally:
        Path(temp_name).unlink(missing_ok=True)


class LocalStore:
    """Key -> JSON value map persisted in a single file, last write wins."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path or APP_STORAGE_PATH)

    def get(self, key: str, default: Any = None) -> Any:
        return load_json_dict(self.path).get(key, default)

    def set(self, key: str, value: Any) -> bool:
        store = load_json_dict(self.path)
        if key in store and store[key] == value:
            return False
        store[key] = value
        write_json_dict_atomic(self.path, store)
        return True

    def remove(self, *keys: str) -> None:
        if not self.path.exists():
            return
        store = load_json_dict(self.path)
        present = [key for key in keys if key in store]
        if not present:
            return
        for key in present:
            store.pop(key, None)
        write_json_dict_atomic(self.path, store)

    def keys(self) -> list[str]:
        return list(load_json_dict(self.path).keys())


def build_draft_key(station_id: str, period: str) -> str:
    return f"price-form-{str(station_id).strip()}-{str(period).strip()}"


def build_competitor_names_key(station_id: str) -> str:
    return f"competitor-names-{str(station_id).strip()}"


def load_competitor_names(store: LocalStore, station_id: str) -> dict[str, str]:
    saved = store.get(build_competitor_names_key(station_id), {})
    if not isinstance(saved, dict):
        return {}
    return {str(key): str(value) for key, value in saved.items() if str(value).strip()}


def save_competitor_name(store: LocalStore, station_id: str, competitor_id: str, name: str) -> None:
    names = load_competitor_names(store, station_id)
    cleaned = str(name).strip()
    if cleaned:
        names[str(competitor_id)] = cleaned
    else:
        names.pop(str(competitor_id), None)
    store.set(build_competitor_names_key(station_id), names)


def load_competitor_count(store: LocalStore) -> int:
    return normalize_competitor_count(store.get(COMPETITOR_COUNT_STORAGE_KEY, DEFAULT_COMPETITOR_COUNT))


def load_session_identity(store: LocalStore) -> tuple[str, Station] | None:
    manager_id = str(store.get(MANAGER_ID_STORAGE_KEY, "") or "").strip()
    station = find_station(str(store.get(STATION_ID_STORAGE_KEY, "") or ""))
    if not manager_id or station is None:
        return None
    return manager_id, station


def login_manager(store: LocalStore, manager_id: str, station_id: str) -> dict[str, str]:
    errors: dict[str, str] = {}
    manager_text = str(manager_id).strip()
    if not manager_text:
        errors["managerId"] = "O nome do gerente é obrigatório."
    if find_station(station_id) is None:
        errors["stationId"] = "Por favor, selecione um posto."
    if errors:
        return errors
    store.set(MANAGER_ID_STORAGE_KEY, manager_text)
    store.set(STATION_ID_STORAGE_KEY, str(station_id).strip())
    append_runtime_log("INFO", "session.login", f"{manager_text} -> {station_id}")
    return {}


def logout_manager(store: LocalStore) -> None:
    store.remove(MANAGER_ID_STORAGE_KEY, STATION_ID_STORAGE_KEY)


# --- station configuration ---


def find_station(station_id: str) -> Station | None:
    target = str(station_id).strip()
    for station in STATIONS:
        if station.id == target:
            return station
    return None


def build_competitor_roster(
    station: Station,
    count: int,
    name_overrides: dict[str, str] | None = None,
) -> list[Competitor]:
    bounded = normalize_competitor_count(count)
    roster = list(station.competitors[:bounded])
    for position in range(len(roster) + 1, bounded + 1):
        roster.append(Competitor(id=f"{station.id}-extra-{position}", name=f"Concorrente {position}"))

    overrides = name_overrides or {}
    return [
        Competitor(id=competitor.id, name=str(overrides.get(competitor.id, "")).strip() or competitor.name)
        for competitor in roster
    ]


# --- price mask and price values ---


def apply_price_mask(raw_value: Any) -> str:
    text = "" if raw_value is None else str(raw_value)
    if text == NO_DATA:
        return text
    digits = re.sub(r"\D", "", text)[:PRICE_MASK_MAX_DIGITS]
    if len(digits) >= 2:
        return f"{digits[0]},{digits[1:]}"
    return digits


def normalize_price_value(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        if pd.isna(value) or value <= 0:
            return ""
        formatted = f"{float(value):.2f}"
        if float(formatted) > MAX_MASKED_PRICE:
            append_runtime_log("WARNING", "drafts.price", f"Discarded out-of-range price {value!r}.")
            return ""
        return apply_price_mask(formatted)
    text = str(value).strip()
    if text == NO_DATA:
        return NO_DATA
    return apply_price_mask(text)


def is_price_value_valid(value: str) -> bool:
    return value in {"", NO_DATA} or bool(PRICE_VALUE_PATTERN.match(value))


def sanitize_price_set(raw: Any) -> dict[str, dict[str, str]]:
    prices = empty_price_set()
    if not isinstance(raw, dict):
        return prices
    for method in PAYMENT_METHODS:
        method_values = raw.get(method)
        if not isinstance(method_values, dict):
            continue
        for fuel in FUEL_TYPES:
            prices[method][fuel] = normalize_price_value(method_values.get(fuel))
    return prices


# --- photo capture ---


def parse_coordinate(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if pd.isna(parsed):
        return None
    return parsed


def parse_location_params(latitude_text: str, longitude_text: str) -> tuple[float, float] | None:
    latitude = parse_coordinate(latitude_text)
    longitude = parse_coordinate(longitude_text)
    if latitude is None or longitude is None:
        return None
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        return None
    return latitude, longitude


def ensure_decodable_image(raw_bytes: bytes) -> None:
    try:
        with Image.open(BytesIO(raw_bytes)) as image:
            image.verify()
    except (OSError, SyntaxError, ValueError) as exc:
        raise ValueError("O arquivo selecionado não é uma imagem válida.") from exc


def photo_record_from_upload(
    file_name: str,
    mime_type: str | None,
    raw_bytes: bytes,
    location: tuple[float, float] | None = None,
) -> PhotoFieldState:
    suffix = Path(str(file_name)).suffix.lower().lstrip(".")
    resolved_mime = str(mime_type or "").strip().lower() or ACCEPTED_PHOTO_TYPES.get(suffix, "")
    if resolved_mime not in ACCEPTED_PHOTO_MIME_TYPES:
        raise ValueError("Apenas .jpg, .jpeg, .png e .webp são permitidos.")
    if not raw_bytes:
        raise ValueError("A imagem selecionada está vazia.")
    if len(raw_bytes) > MAX_PHOTO_BYTES:
        raise ValueError("O tamanho máximo da imagem é 5MB.")
    ensure_decodable_image(raw_bytes)

    encoded = base64.b64encode(raw_bytes).decode("ascii")
    photo = PhotoFieldState(
        data_uri=f"data:{resolved_mime};base64,{encoded}",
        file_name=Path(str(file_name)).name,
    )
    if location is not None:
        photo.latitude, photo.longitude = location
    return photo


def strip_data_uri_prefix(data_uri: str) -> str:
    text = str(data_uri or "").strip()
    match = DATA_URI_PREFIX_PATTERN.match(text)
    if match:
        return text[match.end():]
    return text


def photo_bytes(photo: PhotoFieldState) -> bytes:
    return base64.b64decode(strip_data_uri_prefix(photo.data_uri))


def clear_form_photos(form: FormState) -> None:
    for _, entity in form.entities():
        entity.photo = PhotoFieldState()


# --- draft (de)serialization and migrations ---


def photo_state_to_dict(photo: PhotoFieldState) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "dataUri": str(photo.data_uri).strip(),
        "fileName": str(photo.file_name).strip(),
    }
    if photo.has_location:
        payload["latitude"] = float(photo.latitude)
        payload["longitude"] = float(photo.longitude)
    return payload


def photo_state_from_raw(raw: Any) -> PhotoFieldState:
    if isinstance(raw, str):
        return PhotoFieldState(data_uri=raw.strip())
    if not isinstance(raw, dict):
        return PhotoFieldState()
    latitude = parse_coordinate(raw.get("latitude"))
    longitude = parse_coordinate(raw.get("longitude"))
    if latitude is None or longitude is None:
        latitude = longitude = None
    return PhotoFieldState(
        data_uri=str(raw.get("dataUri", "") or "").strip(),
        file_name=str(raw.get("fileName", "") or "").strip(),
        latitude=latitude,
        longitude=longitude,
    )


def entity_to_dict(entity: EntityForm) -> dict[str, Any]:
    return {
        "id": str(entity.id),
        "name": str(entity.name),
        "prices": sanitize_price_set(entity.prices),
        "noChange": bool(entity.no_change),
        "photo": photo_state_to_dict(entity.photo),
    }


def entity_from_dict(raw: dict[str, Any]) -> EntityForm:
    return EntityForm(
        id=str(raw.get("id", "") or ""),
        name=str(raw.get("name", "") or ""),
        prices=sanitize_price_set(raw.get("prices")),
        no_change=bool(raw.get("noChange", False)),
        photo=photo_state_from_raw(raw.get("photo")),
    )


def form_state_to_dict(form: FormState) -> dict[str, Any]:
    return {
        "version": DRAFT_SCHEMA_VERSION,
        "station": entity_to_dict(form.station),
        "competitors": [entity_to_dict(competitor) for competitor in form.competitors],
    }


def form_state_from_dict(raw: dict[str, Any]) -> FormState:
    station_raw = raw.get("station")
    if not isinstance(station_raw, dict):
        raise ValueError("Draft is missing the station block.")
    competitors_raw = raw.get("competitors", [])
    if not isinstance(competitors_raw, list):
        raise ValueError("Draft competitors must be a list.")
    return FormState(
        station=entity_from_dict(station_raw),
        competitors=[entity_from_dict(item) for item in competitors_raw if isinstance(item, dict)],
    )


def detect_draft_version(raw: dict[str, Any]) -> int:
    explicit_version = raw.get("version")
    if explicit_version is not None:
        try:
            return int(explicit_version)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid draft version: {explicit_version!r}") from exc
    if "station" in raw:
        return DRAFT_SCHEMA_VERSION
    station_prices = raw.get("stationPrices")
    if isinstance(station_prices, dict) and any(method in station_prices for method in PAYMENT_METHODS):
        return 2
    return 1


def migrate_draft_v1_to_v2(raw: dict[str, Any]) -> dict[str, Any]:
    """Flat prices were cash quotes; the term prices start empty."""

    def split_prices(flat_prices: Any) -> dict[str, Any]:
        return {"vista": dict(flat_prices) if isinstance(flat_prices, dict) else {}, "prazo": {}}

    competitors = raw.get("competitors", [])
    return {
        "version": 2,
        "stationPrices": split_prices(raw.get("stationPrices")),
        "stationNoChange": bool(raw.get("stationNoChange", False)),
        "stationPhoto": raw.get("stationImage") or {},
        "competitors": [
            {
                "id": item.get("id", ""),
                "name": item.get("name", ""),
                "prices": split_prices(item.get("prices")),
                "noChange": bool(item.get("noChange", False)),
                "photo": item.get("image") or {},
            }
            for item in (competitors if isinstance(competitors, list) else [])
            if isinstance(item, dict)
        ],
    }


def migrate_draft_v2_to_v3(raw: dict[str, Any]) -> dict[str, Any]:
    competitors = raw.get("competitors", [])
    return {
        "version": 3,
        "station": {
            "id": raw.get("stationId", ""),
            "name": raw.get("stationName", ""),
            "prices": raw.get("stationPrices", {}),
            "noChange": bool(raw.get("stationNoChange", False)),
            "photo": raw.get("stationPhoto") or raw.get("stationImage") or {},
        },
        "competitors": [
            {
                "id": item.get("id", ""),
                "name": item.get("name", ""),
                "prices": item.get("prices", {}),
                "noChange": bool(item.get("noChange", False)),
                "photo": item.get("photo") or item.get("image") or {},
            }
            for item in (competitors if isinstance(competitors, list) else [])
            if isinstance(item, dict)
        ],
    }


DRAFT_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: migrate_draft_v1_to_v2,
    2: migrate_draft_v2_to_v3,
}


def migrate_draft(raw: dict[str, Any]) -> FormState:
    current = dict(raw)
    version = detect_draft_version(current)
    if version > DRAFT_SCHEMA_VERSION or version < 1:
        raise ValueError(f"Unsupported draft version: {version}")
    while version < DRAFT_SCHEMA_VERSION:
        current = DRAFT_MIGRATIONS[version](current)
        version = detect_draft_version(current)
    return form_state_from_dict(current)


def form_has_content(form: FormState) -> bool:
    for _, entity in form.entities():
        if entity.no_change or not entity.photo.is_empty:
            return True
        for method in PAYMENT_METHODS:
            if any(str(entity.prices.get(method, {}).get(fuel, "")).strip() for fuel in FUEL_TYPES):
                return True
    return False


class DraftRepository:
    def __init__(self, store: LocalStore) -> None:
        self.store = store

    def load(self, key: str) -> FormState | None:
        raw = self.store.get(key)
        if not isinstance(raw, dict):
            return None
        try:
            return migrate_draft(raw)
        except (TypeError, ValueError, KeyError) as exc:
            log_runtime_error("drafts.load", exc)
            return None

    def save(self, key: str, form: FormState) -> bool:
        return self.store.set(key, form_state_to_dict(form))

    def clear(self, key: str) -> None:
        self.store.remove(key)


# --- validation ---


def price_field_path(index: int | None, method: str, fuel: str) -> str:
    if index is None:
        return f"stationPrices.{method}.{fuel}"
    return f"competitors.{index}.prices.{method}.{fuel}"


def photo_field_path(index: int | None) -> str:
    return "stationPhoto" if index is None else f"competitors.{index}.photo"


def name_field_path(index: int | None) -> str:
    return "stationName" if index is None else f"competitors.{index}.name"


def no_change_field_path(index: int | None) -> str:
    return "stationNoChange" if index is None else f"competitors.{index}.noChange"


def validate_form_state(form: FormState, photo_always_required: bool = False) -> dict[str, str]:
    errors: dict[str, str] = {}
    seen_names: set[str] = set()

    for index, entity in form.entities():
        name_text = str(entity.name).strip()
        if not name_text:
            errors[name_field_path(index)] = REQUIRED_NAME_MESSAGE
        elif name_text.casefold() in seen_names:
            errors[name_field_path(index)] = DUPLICATE_NAME_MESSAGE
        else:
            seen_names.add(name_text.casefold())

        photo_required = photo_always_required or not entity.no_change
        if photo_required and entity.photo.is_empty:
            errors[photo_field_path(index)] = REQUIRED_PHOTO_MESSAGE

        if entity.no_change:
            continue

        for method in PAYMENT_METHODS:
            method_values = entity.prices.get(method, {})
            for fuel in FUEL_TYPES:
                value = str(method_values.get(fuel, "") or "").strip()
                if value == NO_DATA:
                    continue
                path = price_field_path(index, method, fuel)
                if not value:
                    errors[path] = REQUIRED_FIELD_MESSAGE
                elif not is_price_value_valid(value):
                    errors[path] = INVALID_PRICE_MESSAGE

    return errors


def build_submission(
    form: FormState,
    manager_id: str,
    station_id: str,
    period: str,
    submitted_at: datetime,
) -> Submission:
    return Submission(
        manager_id=str(manager_id).strip(),
        station_id=str(station_id).strip(),
        period=str(period).strip(),
        submitted_at=submitted_at,
        station=deepcopy(form.station),
        competitors=tuple(deepcopy(competitor) for competitor in form.competitors),
    )


# --- payload flattening ---


def price_payload_label(method: str, fuel: str) -> str:
    return f"{PAYMENT_METHOD_LABELS[method]}/{FUEL_LABELS[fuel]}"


def entity_payload_key(name: str, label: str) -> str:
    return f"({str(name).strip()}) {label}"


def format_price_for_payload(value: Any) -> str:
    text = str(value or "").strip()
    if text == NO_DATA:
        return NO_DATA
    return text.replace(",", ".")


def flatten_entity(entity: EntityForm) -> dict[str, str]:
    payload: dict[str, str] = {
        entity_payload_key(entity.name, PHOTO_LABEL): strip_data_uri_prefix(entity.photo.data_uri),
    }
    if entity.photo.has_location:
        payload[entity_payload_key(entity.name, LATITUDE_LABEL)] = f"{entity.photo.latitude:.6f}"
        payload[entity_payload_key(entity.name, LONGITUDE_LABEL)] = f"{entity.photo.longitude:.6f}"
    payload[entity_payload_key(entity.name, NO_CHANGE_LABEL)] = "SIM" if entity.no_change else "NÃO"

    if entity.no_change:
        return payload

    for method in PAYMENT_METHODS:
        method_values = entity.prices.get(method, {})
        for fuel in FUEL_TYPES:
            payload[entity_payload_key(entity.name, price_payload_label(method, fuel))] = (
                format_price_for_payload(method_values.get(fuel, ""))
            )
    return payload


def flatten_submission(submission: Submission) -> dict[str, str]:
    submitted_at = submission.submitted_at
    if submitted_at.tzinfo is not None:
        submitted_at = submitted_at.astimezone()

    payload: dict[str, str] = {
        PAYLOAD_DATE_KEY: submitted_at.strftime("%d/%m/%Y"),
        PAYLOAD_TIME_KEY: submitted_at.strftime("%H:%M"),
        PAYLOAD_PERIOD_KEY: submission.period,
        PAYLOAD_MANAGER_KEY: submission.manager_id,
        PAYLOAD_STATION_KEY: str(submission.station.name).strip(),
    }
    for entity in submission.entities():
        payload.update(flatten_entity(entity))
    return payload


def unflatten_prices(payload: dict[str, Any], names: list[str]) -> dict[str, dict[str, dict[str, str]]]:
    label_lookup = {
        price_payload_label(method, fuel): (method, fuel)
        for method in PAYMENT_METHODS
        for fuel in FUEL_TYPES
    }
    recovered: dict[str, dict[str, dict[str, str]]] = {}
    for name in names:
        prefix = entity_payload_key(name, "")
        for key, value in payload.items():
            if not str(key).startswith(prefix):
                continue
            target = label_lookup.get(str(key)[len(prefix):])
            if target is None:
                continue
            method, fuel = target
            recovered.setdefault(name, empty_price_set())[method][fuel] = str(value)
    return recovered


def build_payload_frame(payload: dict[str, Any]) -> pd.DataFrame:
    rows = []
    for key, value in payload.items():
        text = str(value)
        if str(key).endswith(f") {PHOTO_LABEL}") and text:
            text = f"<imagem base64, {len(text)} caracteres>"
        rows.append({"Campo": str(key), "Valor": text})
    return pd.DataFrame(rows, columns=["Campo", "Valor"])


# --- webhook dispatch ---


def resolve_webhook_url(settings: dict[str, Any] | None = None) -> str:
    url = os.environ.get(WEBHOOK_URL_ENV_VAR, "").strip()
    if not url and settings:
        url = str(settings.get("webhook_url", "") or "").strip()
    if not url:
        raise WebhookConfigError(
            f"A URL do webhook não está configurada. Defina a variável de ambiente {WEBHOOK_URL_ENV_VAR}."
        )

    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise WebhookConfigError(f"A URL do webhook é inválida: `{url}`.")
    return url


def post_webhook(
    url: str,
    payload: dict[str, Any],
    timeout: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
) -> int:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    request = Request(
        url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    try:
        with urlopen(request, timeout=timeout) as response:
            status = int(getattr(response, "status", 200) or 200)
    except HTTPError as exc:
        raise WebhookDeliveryError(f"Webhook respondeu com HTTP {exc.code}.") from exc
    except (URLError, TimeoutError, OSError) as exc:
        raise WebhookDeliveryError(f"Falha de rede ao chamar o webhook: {exc}") from exc

    if status >= 400:
        raise WebhookDeliveryError(f"Webhook respondeu com HTTP {status}.")
    return status


@dataclass
class DispatchResult:
    delivered: bool
    status_code: int | None = None
    worker: threading.Thread | None = None


def dispatch_payload(
    url: str,
    payload: dict[str, Any],
    *,
    await_delivery: bool = True,
    timeout: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
    post: Callable[[str, dict[str, Any], float], int] | None = None,
) -> DispatchResult:
    sender = post or post_webhook

    if await_delivery:
        status = sender(url, payload, timeout)
        append_runtime_log("INFO", "webhook.dispatch", f"Delivered {len(payload)} keys (HTTP {status}).")
        return DispatchResult(delivered=True, status_code=status)

    def send_in_background() -> None:
        try:
            status = sender(url, payload, timeout)
        except Exception as exc:
            log_runtime_error("webhook.dispatch.background", exc)
            return
        append_runtime_log("INFO", "webhook.dispatch.background", f"Delivered {len(payload)} keys (HTTP {status}).")

    worker = threading.Thread(target=send_in_background, name="precoposto-webhook", daemon=True)
    worker.start()
    return DispatchResult(delivered=False, worker=worker)


# --- form controller ---


@dataclass
class SubmitOutcome:
    status: str
    errors: dict[str, str] = field(default_factory=dict)
    payload: dict[str, str] = field(default_factory=dict)
    message: str = ""
    worker: threading.Thread | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in {"sent", "queued"}


class PriceFormController:
    def __init__(
        self,
        repository: DraftRepository,
        station: Station,
        period: str,
        manager_id: str,
        *,
        competitor_count: int = DEFAULT_COMPETITOR_COUNT,
        name_overrides: dict[str, str] | None = None,
        settings: dict[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
        post: Callable[[str, dict[str, Any], float], int] | None = None,
    ) -> None:
        self.repository = repository
        self.station = station
        self.period = period
        self.manager_id = manager_id
        self.competitor_count = normalize_competitor_count(competitor_count)
        self.name_overrides = dict(name_overrides or {})
        self.settings = sanitize_app_settings(settings or {})
        self.clock = clock or datetime.now
        self.post = post

    @property
    def draft_key(self) -> str:
        return build_draft_key(self.station.id, self.period)

    def blank_form(self) -> FormState:
        roster = build_competitor_roster(self.station, self.competitor_count, self.name_overrides)
        return FormState(
            station=EntityForm(id=self.station.id, name=self.station.name),
            competitors=[EntityForm(id=competitor.id, name=competitor.name) for competitor in roster],
        )

    def load_form(self) -> FormState:
        """Blank roster hydrated with whatever the saved draft holds for the same ids."""
        form = self.blank_form()
        draft = self.repository.load(self.draft_key)
        if draft is None:
            return form

        saved_by_id = {competitor.id: competitor for competitor in draft.competitors}
        form.station.prices = draft.station.prices
        form.station.no_change = draft.station.no_change
        form.station.photo = draft.station.photo
        for competitor in form.competitors:
            saved = saved_by_id.get(competitor.id)
            if saved is None:
                continue
            competitor.prices = saved.prices
            competitor.no_change = saved.no_change
            competitor.photo = saved.photo
        return form

    def autosave(self, form: FormState) -> bool:
        if form_has_content(form):
            return self.repository.save(self.draft_key, form)
        if self.repository.load(self.draft_key) is not None:
            self.repository.clear(self.draft_key)
            return True
        return False

    def validate(self, form: FormState) -> dict[str, str]:
        return validate_form_state(form, photo_always_required=self.settings["photo_always_required"])

    def submit(self, form: FormState) -> SubmitOutcome:
        errors = self.validate(form)
        if errors:
            return SubmitOutcome(
                status="invalid",
                errors=errors,
                message="Corrija os campos destacados antes de enviar.",
            )

        try:
            url = resolve_webhook_url(self.settings)
        except WebhookConfigError as exc:
            log_runtime_error("price_form.submit.config", exc)
            return SubmitOutcome(status="config_error", message=str(exc))

        submission = build_submission(form, self.manager_id, self.station.id, self.period, self.clock())
        payload = flatten_submission(submission)
        try:
            result = dispatch_payload(
                url,
                payload,
                await_delivery=self.settings["await_delivery"],
                timeout=self.settings["webhook_timeout_seconds"],
                post=self.post,
            )
        except WebhookDeliveryError as exc:
            log_runtime_error("price_form.submit.delivery", exc)
            return SubmitOutcome(status="failed", payload=payload, message=DELIVERY_FAILURE_MESSAGE)

        self.finish_submission(form)
        return SubmitOutcome(
            status="sent" if result.delivered else "queued",
            payload=payload,
            message="Os dados foram enviados corretamente.",
            worker=result.worker,
        )

    def finish_submission(self, form: FormState) -> None:
        clear_form_photos(form)
        try:
            self.repository.save(self.draft_key, form)
        except OSError as exc:
            log_runtime_error("price_form.submit.draft", exc)


def build_diagnostics_payload(settings: dict[str, Any], store: LocalStore) -> dict[str, Any]:
    try:
        webhook_host = urlparse(resolve_webhook_url(settings)).netloc
    except WebhookConfigError:
        webhook_host = ""

    draft_keys = [key for key in store.keys() if key.startswith("price-form-")]
    return {
        "timestamp": datetime.now().isoformat(timespec="seconds"),
        "app_version": APP_VERSION,
        "python": sys.version.split(" ")[0],
        "webhook_configured": bool(webhook_host),
        "webhook_host": webhook_host,
        "await_delivery": bool(settings.get("await_delivery")),
        "photo_always_required": bool(settings.get("photo_always_required")),
        "capture_location": bool(settings.get("capture_location")),
        "storage_path": str(store.path),
        "storage_exists": store.path.exists(),
        "saved_drafts": draft_keys,
        "runtime_log_path": str(APP_RUNTIME_LOG_PATH),
        "runtime_log_lines": get_runtime_log_line_count(),
    }


# --- streamlit session helpers ---


def form_scope_token(station_id: str, period: str) -> str:
    return hashlib.sha1(f"{station_id}::{period}".encode("utf-8")).hexdigest()[:12]


def field_key(scope: str, path: str, suffix: str = "") -> str:
    if suffix:
        return f"field::{scope}::{path}::{suffix}"
    return f"field::{scope}::{path}"


def photo_state_key(scope: str, index: int | None) -> str:
    return f"photo::{scope}::{photo_field_path(index)}"


def photo_nonce_key(scope: str, index: int | None) -> str:
    return f"photo_nonce::{scope}::{photo_field_path(index)}"


def reset_form_session(scope: str) -> None:
    keys_to_clear = [
        state_key
        for state_key in list(st.session_state.keys())
        if isinstance(state_key, str) and scope in state_key.split("::")
    ]
    for state_key in keys_to_clear:
        st.session_state.pop(state_key, None)


def form_value_key(scope: str, path: str) -> str:
    # Widget keys are dropped whenever their widget is not rendered; form values live here instead.
    return f"value::{scope}::{path}"


def bind_widget_value(scope: str, path: str, default: Any) -> str:
    widget_key = field_key(scope, path)
    st.session_state[widget_key] = st.session_state.get(form_value_key(scope, path), default)
    return widget_key


def write_form_to_session(scope: str, form: FormState) -> None:
    for index, entity in form.entities():
        if index is not None:
            st.session_state[form_value_key(scope, name_field_path(index))] = entity.name
        st.session_state[form_value_key(scope, no_change_field_path(index))] = bool(entity.no_change)
        for method in PAYMENT_METHODS:
            for fuel in FUEL_TYPES:
                value = str(entity.prices.get(method, {}).get(fuel, ""))
                st.session_state[form_value_key(scope, price_field_path(index, method, fuel))] = value
        st.session_state[photo_state_key(scope, index)] = photo_state_to_dict(entity.photo)


def read_form_from_session(scope: str, template: FormState) -> FormState:
    def read_entity(index: int | None, base: EntityForm) -> EntityForm:
        name = base.name
        if index is not None:
            name = str(st.session_state.get(form_value_key(scope, name_field_path(index)), base.name))
        prices = empty_price_set()
        for method in PAYMENT_METHODS:
            for fuel in FUEL_TYPES:
                prices[method][fuel] = str(
                    st.session_state.get(form_value_key(scope, price_field_path(index, method, fuel)), "") or ""
                )
        return EntityForm(
            id=base.id,
            name=name,
            prices=prices,
            no_change=bool(st.session_state.get(form_value_key(scope, no_change_field_path(index)), False)),
            photo=photo_state_from_raw(st.session_state.get(photo_state_key(scope, index))),
        )

    return FormState(
        station=read_entity(None, template.station),
        competitors=[read_entity(index, competitor) for index, competitor in enumerate(template.competitors)],
    )


def keep_widget_value(scope: str, path: str) -> None:
    st.session_state[form_value_key(scope, path)] = st.session_state.get(field_key(scope, path))


def mask_price_widget(scope: str, path: str) -> None:
    st.session_state[form_value_key(scope, path)] = apply_price_mask(
        st.session_state.get(field_key(scope, path), "")
    )


def toggle_no_data_widget(scope: str, path: str) -> None:
    no_data_checked = bool(st.session_state.get(field_key(scope, path, "no_data")))
    st.session_state[form_value_key(scope, path)] = NO_DATA if no_data_checked else ""


def remember_competitor_name(
    store: LocalStore,
    station_id: str,
    competitor_id: str,
    scope: str,
    path: str,
) -> None:
    keep_widget_value(scope, path)
    try:
        save_competitor_name(store, station_id, competitor_id, str(st.session_state.get(field_key(scope, path), "")))
    except OSError as exc:
        log_runtime_error("competitor_names.save", exc)


def get_query_param_text(name: str) -> str:
    try:
        raw_value: Any = st.query_params.get(name, "")
    except Exception:
        return ""
    if isinstance(raw_value, list):
        raw_value = raw_value[0] if raw_value else ""
    return str(raw_value).strip()


def read_query_location() -> tuple[float, float] | None:
    return parse_location_params(get_query_param_text("gps_lat"), get_query_param_text("gps_lon"))


def render_location_probe() -> None:
    components.html(GEOLOCATION_SNIPPET.replace("__TIMEOUT_MS__", str(GEOLOCATION_TIMEOUT_MS)), height=0)


def show_field_error(errors: dict[str, str], path: str) -> None:
    message = errors.get(path)
    if message:
        st.error(message)


# --- streamlit pages ---


def render_price_field(scope: str, index: int | None, method: str, fuel: str, errors: dict[str, str]) -> None:
    path = price_field_path(index, method, fuel)
    value_key = bind_widget_value(scope, path, "")
    no_data_active = st.session_state[value_key] == NO_DATA
    no_data_key = field_key(scope, path, "no_data")
    st.session_state[no_data_key] = no_data_active

    st.text_input(
        f"{FUEL_LABELS[fuel]} (R$)",
        key=value_key,
        placeholder="0,00",
        disabled=no_data_active,
        on_change=mask_price_widget,
        args=(scope, path),
    )
    st.checkbox(
        NO_DATA,
        key=no_data_key,
        on_change=toggle_no_data_widget,
        args=(scope, path),
    )
    show_field_error(errors, path)


def render_photo_field(
    scope: str,
    index: int | None,
    label: str,
    errors: dict[str, str],
    capture_location: bool,
) -> None:
    state_key = photo_state_key(scope, index)
    nonce_key = photo_nonce_key(scope, index)
    nonce = int(st.session_state.get(nonce_key, 0))
    photo = photo_state_from_raw(st.session_state.get(state_key))

    if not photo.is_empty:
        try:
            st.image(photo_bytes(photo), caption=photo.file_name or "Foto anexada", width=260)
        except (ValueError, OSError) as exc:
            log_runtime_error("photo.preview", exc)
            st.warning(UNREADABLE_PHOTO_MESSAGE)
            photo = PhotoFieldState()
            nonce += 1
            st.session_state[state_key] = photo_state_to_dict(photo)
            st.session_state[nonce_key] = nonce

    if not photo.is_empty:
        if photo.has_location:
            st.caption(f"Localização: {photo.latitude:.5f}, {photo.longitude:.5f}")
        if st.button("Remover foto", key=f"{state_key}::remove::{nonce}"):
            st.session_state[state_key] = photo_state_to_dict(PhotoFieldState())
            st.session_state[nonce_key] = nonce + 1
            st.rerun()
    else:
        uploaded = st.file_uploader(
            label,
            type=sorted(ACCEPTED_PHOTO_TYPES),
            accept_multiple_files=False,
            key=f"{state_key}::upload::{nonce}",
        )
        if uploaded is not None:
            location = read_query_location() if capture_location else None
            try:
                record = photo_record_from_upload(uploaded.name, uploaded.type, uploaded.getvalue(), location)
            except ValueError as exc:
                st.warning(str(exc))
            except OSError as exc:
                log_runtime_error("photo.read", exc)
            else:
                st.session_state[state_key] = photo_state_to_dict(record)
                st.session_state[nonce_key] = nonce + 1
                st.rerun()
    show_field_error(errors, photo_field_path(index))


def render_entity_card(
    scope: str,
    index: int | None,
    entity: EntityForm,
    errors: dict[str, str],
    store: LocalStore,
    station_id: str,
    capture_location: bool,
) -> None:
    with st.container(border=True):
        if index is None:
            st.subheader(f":material/local_gas_station: {entity.name}")
            show_field_error(errors, name_field_path(index))
            photo_label = "Anexar foto da placa do posto atual"
            no_change_label = "Não houve alteração nos preços hoje"
        else:
            name_path = name_field_path(index)
            st.text_input(
                "Nome do concorrente",
                key=bind_widget_value(scope, name_path, entity.name),
                on_change=remember_competitor_name,
                args=(store, station_id, entity.id, scope, name_path),
            )
            show_field_error(errors, name_field_path(index))
            photo_label = f"Anexar foto da placa do {entity.name or 'concorrente'}"
            no_change_label = "Este concorrente não alterou os preços"

        render_photo_field(scope, index, photo_label, errors, capture_location)

        no_change_path = no_change_field_path(index)
        no_change_key = bind_widget_value(scope, no_change_path, False)
        st.checkbox(no_change_label, key=no_change_key, on_change=keep_widget_value, args=(scope, no_change_path))
        if st.session_state.get(no_change_key):
            return

        for method in PAYMENT_METHODS:
            st.markdown(f"**{PAYMENT_METHOD_LABELS[method]}**")
            columns = st.columns(2, gap="small")
            for position, fuel in enumerate(FUEL_TYPES):
                with columns[position % 2]:
                    render_price_field(scope, index, method, fuel, errors)


def render_price_form(
    controller: PriceFormController,
    store: LocalStore,
    settings: dict[str, Any],
) -> None:
    scope = form_scope_token(controller.station.id, controller.period)
    restored_key = f"draft_restored::{scope}"
    submit_attempted_key = f"submit_attempted::{scope}"
    draft_error_key = f"draft_error::{scope}"
    template = controller.blank_form()

    if not st.session_state.get(restored_key):
        write_form_to_session(scope, controller.load_form())
        st.session_state[restored_key] = True

    form = read_form_from_session(scope, template)
    try:
        controller.autosave(form)
        st.session_state.pop(draft_error_key, None)
    except OSError as exc:
        log_runtime_error("price_form.autosave", exc)
        st.session_state[draft_error_key] = f"Falha ao salvar o rascunho: {str(exc).strip() or 'erro desconhecido'}"

    errors = controller.validate(form) if st.session_state.get(submit_attempted_key) else {}
    capture_location = bool(settings.get("capture_location"))
    if capture_location:
        render_location_probe()

    for index, entity in form.entities():
        render_entity_card(scope, index, entity, errors, store, controller.station.id, capture_location)

    if st.session_state.get(draft_error_key):
        st.caption(str(st.session_state[draft_error_key]))
    if errors:
        st.error(f"Existem {len(errors)} campo(s) pendente(s). Corrija os itens destacados.")

    if not st.button(
        f"Enviar Dados ({controller.period})",
        key=f"submit::{scope}",
        type="primary",
        width="stretch",
    ):
        return

    st.session_state[submit_attempted_key] = True
    try:
        with st.spinner("Enviando..."):
            outcome = controller.submit(form)
    except Exception as exc:
        log_runtime_error("price_form.submit", exc)
        st.error("Ocorreu um erro inesperado. Tente novamente mais tarde.")
        return

    if outcome.status == "invalid":
        st.rerun()
    elif outcome.status == "config_error":
        st.error(outcome.message)
    elif outcome.status == "failed":
        st.session_state[DELIVERY_FAILURE_STATE_KEY] = outcome.message
        st.rerun()
    else:
        for index, _ in form.entities():
            st.session_state[photo_state_key(scope, index)] = photo_state_to_dict(PhotoFieldState())
            st.session_state[photo_nonce_key(scope, index)] = int(
                st.session_state.get(photo_nonce_key(scope, index), 0)
            ) + 1
        st.session_state[submit_attempted_key] = False
        for period in PERIODS:
            st.session_state.pop(f"draft_restored::{form_scope_token(controller.station.id, period)}", None)
        st.session_state[LAST_OUTCOME_STATE_KEY] = {
            "status": outcome.status,
            "period": controller.period,
            "payload": outcome.payload,
        }
        st.session_state[PAGE_STATE_KEY] = "success"
        st.rerun()


def render_login_page(store: LocalStore) -> None:
    st.title(APP_TITLE)
    with st.container(border=True):
        st.subheader("Acesso do Gerente")
        st.caption("Insira suas credenciais para registrar os preços de hoje.")
        manager_id = st.text_input("Nome ou ID do Gerente", placeholder="Ex: João Silva")
        station_ids = [station.id for station in STATIONS]
        station_names = {station.id: station.name for station in STATIONS}
        station_id = st.selectbox(
            "Posto de Gasolina",
            options=station_ids,
            index=None,
            placeholder="Selecione seu posto",
            format_func=lambda option: station_names.get(option, option),
        )
        if st.button("Entrar", type="primary", width="stretch"):
            errors = login_manager(store, manager_id, station_id or "")
            for message in errors.values():
                st.error(message)
            if not errors:
                st.session_state[PAGE_STATE_KEY] = "dashboard"
                st.rerun()


def render_success_page() -> None:
    outcome = st.session_state.get(LAST_OUTCOME_STATE_KEY) or {}
    period = str(outcome.get("period", ""))
    with st.container(border=True):
        st.header(":material/check_circle: Sucesso!")
        if outcome.get("status") == "queued":
            st.write("Os dados foram encaminhados para envio.")
        else:
            st.write("Os dados foram enviados corretamente.")
        if period in NEXT_PERIOD_HINTS:
            st.caption(NEXT_PERIOD_HINTS[period])
        payload = outcome.get("payload") or {}
        if payload:
            with st.expander("Resumo do envio"):
                st.dataframe(build_payload_frame(payload), hide_index=True, width="stretch")
        if st.button("Voltar para o Início", key="back_to_dashboard_button", type="primary", width="stretch"):
            st.session_state[PAGE_STATE_KEY] = "dashboard"
            st.rerun()


def render_dashboard_page(store: LocalStore, settings: dict[str, Any]) -> None:
    identity = load_session_identity(store)
    if identity is None:
        logout_manager(store)
        st.session_state[PAGE_STATE_KEY] = "login"
        st.rerun()
    manager_id, station = identity
    competitor_count = load_competitor_count(store)
    scopes = [form_scope_token(station.id, period) for period in PERIODS]

    @st.dialog("Configurações", width="large")
    def show_settings_dialog() -> None:
        count_options = list(range(MIN_COMPETITOR_COUNT, MAX_COMPETITOR_COUNT + 1))
        selected_count = st.selectbox(
            "Concorrentes",
            options=count_options,
            index=count_options.index(competitor_count),
            format_func=lambda number: f"{number} Concorrente{'s' if number > 1 else ''}",
            help="Ajuste de acordo com a quantidade de concorrentes que irá enviar dados.",
        )
        await_delivery = st.toggle(
            "Aguardar confirmação do webhook antes de concluir",
            value=bool(settings["await_delivery"]),
        )
        photo_always_required = st.toggle(
            "Exigir foto mesmo quando não houve alteração",
            value=bool(settings["photo_always_required"]),
        )
        capture_location = st.toggle(
            "Anexar localização do aparelho às fotos",
            value=bool(settings["capture_location"]),
        )
        timeout_seconds = st.number_input(
            "Tempo limite do webhook (segundos)",
            min_value=MIN_WEBHOOK_TIMEOUT_SECONDS,
            max_value=MAX_WEBHOOK_TIMEOUT_SECONDS,
            value=int(settings["webhook_timeout_seconds"]),
            step=1,
        )

        with st.expander("Diagnóstico"):
            st.json(build_diagnostics_payload(settings, store))
            log_tail = read_runtime_log_tail(40)
            st.code("\n".join(log_tail) or "(log vazio)", language="text")
            if st.button("Limpar log", key="clear_runtime_log_button"):
                clear_runtime_log()
                st.rerun()

        if st.button("Confirmar", type="primary", width="stretch"):
            try:
                save_app_settings(
                    {
                        "await_delivery": await_delivery,
                        "photo_always_required": photo_always_required,
                        "capture_location": capture_location,
                        "webhook_timeout_seconds": timeout_seconds,
                    }
                )
                if store.set(COMPETITOR_COUNT_STORAGE_KEY, int(selected_count)):
                    for scope in scopes:
                        reset_form_session(scope)
            except OSError as exc:
                log_runtime_error("settings.save", exc)
                st.error(f"Não foi possível salvar as configurações: {exc}")
                return
            st.rerun()

    @st.dialog("Erro ao Enviar")
    def show_delivery_failure_dialog(message: str) -> None:
        st.error(message)
        if st.button("Fechar", width="stretch"):
            st.rerun()

    header_col, menu_col = st.columns([10, 2], gap="small")
    with header_col:
        st.title("Registro de Preços Diário")
        st.caption(f"{manager_id} · {station.name}")
    with menu_col:
        with st.popover("Menu", width="stretch"):
            open_settings = st.button("Configurações", key="open_settings_menu_button", width="stretch")
            do_logout = st.button("Sair", key="logout_menu_button", width="stretch")

    if do_logout:
        logout_manager(store)
        for scope in scopes:
            reset_form_session(scope)
        st.session_state[PAGE_STATE_KEY] = "login"
        st.rerun()
    if open_settings:
        show_settings_dialog()

    failure_message = st.session_state.pop(DELIVERY_FAILURE_STATE_KEY, None)
    if failure_message:
        show_delivery_failure_dialog(str(failure_message))

    st.write("Selecione o período e preencha as informações abaixo.")
    repository = DraftRepository(store)
    name_overrides = load_competitor_names(store, station.id)
    for tab, period in zip(st.tabs(list(PERIODS)), PERIODS):
        with tab:
            controller = PriceFormController(
                repository,
                station,
                period,
                manager_id,
                competitor_count=competitor_count,
                name_overrides=name_overrides,
                settings=settings,
            )
            render_price_form(controller, store, settings)


def main() -> None:
    st.set_page_config(
        page_title=APP_TITLE,
        page_icon=":fuelpump:",
        layout="centered",
        initial_sidebar_state="collapsed",
    )
    st.markdown(
        """
        <style>
            :root {
                --precoposto-accent: #15803d;
                --precoposto-surface: #ffffff;
                --precoposto-radius: 14px;
            }
            [data-testid="stToolbar"],
            [data-testid="stDecoration"],
            [data-testid="stSidebarCollapsedControl"] {
                display: none !important;
            }
            .block-container {
                padding-top: 1rem !important;
                padding-left: 0.8rem !important;
                padding-right: 0.8rem !important;
                max-width: 760px;
            }
            [data-testid="stVerticalBlockBorderWrapper"] {
                background: var(--precoposto-surface);
                border-radius: var(--precoposto-radius);
            }
            [data-testid="stTextInput"] input {
                font-variant-numeric: tabular-nums;
            }
            .stButton > button[kind="primary"] {
                background-color: var(--precoposto-accent);
                border-color: var(--precoposto-accent);
            }
        </style>
        """,
        unsafe_allow_html=True,
    )

    store = LocalStore()
    settings = load_app_settings()
    if PAGE_STATE_KEY not in st.session_state:
        st.session_state[PAGE_STATE_KEY] = "dashboard" if load_session_identity(store) else "login"

    page = st.session_state[PAGE_STATE_KEY]
    if page == "success":
        render_success_page()
    elif page == "dashboard":
        render_dashboard_page(store, settings)
    else:
        render_login_page(store)


if __name__ == "__main__":
    main()
