# -*- coding: utf-8 -*-
"""
stl_core.py — чистое ядро разбора STL (ASCII и бинарный).

Цели:
- Никакого UI / HTTP / хранилища, только байты на входе и неизменяемые записи на выходе.
- Один источник правды для: определения формата, чтения треугольников, габаритов,
  оценок площади/объёма и валидации загрузки.
- Валидация до передачи файла и после неё вызывает ОДНУ функцию validate(),
  поэтому решения «принять/отклонить» не расходятся.

Совместимость:
- Режим оценки по умолчанию ("heuristic") воспроизводит сохранённые ранее значения:
  площадь = граней * 0.01, объём = объём габаритов * 0.3.
- Нечисловые токены в ASCII по умолчанию превращаются в NaN (политика "nan"),
  строгая политика ("strict") включается явно.
"""
from __future__ import annotations

import json
import os
import re
import struct
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import numpy as np


# ---------- Ошибки ----------
class StlError(ValueError):
    """Базовая ошибка разбора STL. Наследуется от ValueError, как и прочие ошибки входных данных."""
    code = "stl_error"


class StlFormatError(StlError):
    code = "format_error"


class TruncatedFileError(StlError):
    code = "truncated_file"


class MalformedNumericError(StlError):
    code = "malformed_numeric"


class SizeLimitExceededError(StlError):
    code = "size_limit_exceeded"


class ExtensionMismatchError(StlError):
    code = "extension_mismatch"


# ---------- Формат ----------
HEADER_BYTES = 80
COUNT_OFFSET = 80
FACETS_OFFSET = 84
FACET_RECORD_BYTES = 50
SNIFF_BYTES = 6

ENCODING_ASCII = "ascii"
ENCODING_BINARY = "binary"

NUMERIC_POLICIES = ("nan", "strict")

# normal(12) + 3 вершины(36) + attribute(2) = 50 байт, little-endian
_FACET_DTYPE = np.dtype([
    ("normal", "<f4", (3,)),
    ("vertices", "<f4", (3, 3)),
    ("attr", "<u2"),
])

# Аналог parseFloat: самый длинный числовой префикс токена, иначе NaN.
_FLOAT_PREFIX_RE = re.compile(r"[+-]?(?:Infinity|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)", re.ASCII)
# trim() в JS не трогает \x1c-\x1f, в отличие от str.strip()
_JS_WHITESPACE = " \t\n\r\v\f"
_ASCII_HEADER_RE = re.compile(r"solid\s+(.*)")

MSG_EXTENSION = "File must have .stl extension"
MSG_TOO_LARGE = "File is too large (max 100MB)"
MSG_ASCII_HEADER = "Invalid ASCII STL file format"
MSG_BINARY_CORRUPTED = "Binary STL file is corrupted or incomplete"


# ---------- Настройки ----------
DEFAULT_SETTINGS = {
    "limits": {
        "max_file_bytes": 100 * 1024 * 1024,
        "ascii_probe_bytes": 1000,
        "ascii_bytes_per_facet": 400,
    },
    "estimator": {
        "mode": "heuristic",
        "area_per_facet": 0.01,
        "volume_shape_factor": 0.3,
    },
    "parsing": {
        "numeric_policy": "nan",
    },
}


def nz(v, d=0.0) -> float:
    try:
        f = float(v)
        if np.isfinite(f):
            return f
    except Exception:
        pass
    return d


LIMIT_KEYS = ("max_file_bytes", "ascii_probe_bytes", "ascii_bytes_per_facet")


def limit_value(limits: dict | None, key: str) -> int:
    """Положительное целое из limits[key]; мусор, NaN и значения <= 0 -> умолчание."""
    default = DEFAULT_SETTINGS["limits"][key]
    v = int(nz((limits or {}).get(key), default))
    return v if v > 0 else default


def max_file_bytes(limits: dict | None) -> int:
    return limit_value(limits, "max_file_bytes")


def deep_merge(dst: dict, src: dict) -> dict:
    """Глубокое слияние словарей src в dst (in-place). Возвращает dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def resolve_settings(settings: dict | None = None) -> dict:
    """Копия DEFAULT_SETTINGS с наложенными поверх частичными настройками."""
    out = json.loads(json.dumps(DEFAULT_SETTINGS))
    return deep_merge(out, settings or {})


def get_default_config_dir() -> str:
    return os.path.dirname(os.path.abspath(__file__))


def get_default_settings_path(config_dir: str | None = None) -> str:
    base = config_dir or get_default_config_dir()
    return os.path.join(base, "stl_settings.json")


def load_settings_json(path: str, *, base: dict | None = None, override: dict | None = None) -> dict:
    """
    stl_settings.json -> settings dict.
    base: если задан, то в него мерджится файл (обычно DEFAULT_SETTINGS).
    override: мердж поверх результата (например, --set в CLI).
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    with open(path, "r", encoding="utf-8") as f:
        cfg = json.load(f)

    if not isinstance(cfg, dict) or not cfg:
        raise ValueError("stl_settings.json: expected object")

    out = json.loads(json.dumps(base)) if isinstance(base, dict) else {}
    deep_merge(out, cfg)
    if override:
        deep_merge(out, override)
    return check_settings(out)


def check_settings(out: dict) -> dict:
    """Проверка режима, политики и лимитов. Возвращает out без изменений."""
    mode = ((out.get("estimator") or {}).get("mode"))
    if mode is not None and mode not in ESTIMATORS:
        raise ValueError(f"stl_settings.json: unknown estimator.mode {mode!r}")
    policy = ((out.get("parsing") or {}).get("numeric_policy"))
    if policy is not None and policy not in NUMERIC_POLICIES:
        raise ValueError(f"stl_settings.json: unknown parsing.numeric_policy {policy!r}")
    for key, v in (out.get("limits") or {}).items():
        if key in LIMIT_KEYS and not nz(v, 0.0) > 0:
            raise ValueError(f"stl_settings.json: limits.{key} must be a positive number, got {v!r}")
    return out


def is_stl_filename(name: str) -> bool:
    return os.path.splitext(name or "")[1].lower() == ".stl"


# ---------- Записи результата ----------
@dataclass(frozen=True)
class BoundingBox:
    min: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    max: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    @property
    def size(self) -> Tuple[float, float, float]:
        return (
            self.max[0] - self.min[0],
            self.max[1] - self.min[1],
            self.max[2] - self.min[2],
        )

    def to_dict(self) -> dict:
        return {"min": list(self.min), "max": list(self.max)}


@dataclass(frozen=True)
class MeshInfo:
    vertex_count: int
    face_count: int
    bounding_box: BoundingBox
    surface_area: float
    volume: float

    def to_dict(self) -> dict:
        return {
            "vertex_count": self.vertex_count,
            "face_count": self.face_count,
            "bounding_box": self.bounding_box.to_dict(),
            "surface_area": self.surface_area,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    face_count: int = 0
    vertex_count: int = 0
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "face_count": self.face_count,
            "vertex_count": self.vertex_count,
            "error_message": self.error_message,
            "error_code": self.error_code,
        }


@dataclass(frozen=True)
class Diagnostics:
    """Диагностика разбора: что решил сниффер и сколько NaN дошло до габаритов."""
    encoding: str
    byte_length: int
    estimator: str
    format_ambiguous: bool = False
    declared_faces: Optional[int] = None
    nan_coordinates: int = 0

    def to_dict(self) -> dict:
        return {
            "encoding": self.encoding,
            "byte_length": self.byte_length,
            "estimator": self.estimator,
            "format_ambiguous": self.format_ambiguous,
            "declared_faces": self.declared_faces,
            "nan_coordinates": self.nan_coordinates,
        }


@dataclass(frozen=True)
class Analysis:
    info: MeshInfo
    diagnostics: Diagnostics


def _rejected(message: str, code: str) -> ValidationResult:
    return ValidationResult(is_valid=False, face_count=0, vertex_count=0, error_message=message, error_code=code)


# ---------- Определение формата ----------
def sniff_encoding(data: bytes) -> str:
    """
    Первые 6 байт -> текст -> strip/lower == "solid" ? ASCII : бинарный.
    Бинарный файл, чей заголовок начинается с "solid", сознательно считается ASCII:
    никаких эвристик поверх этой проверки.
    """
    head = bytes(data[:SNIFF_BYTES]).decode("utf-8", errors="replace")
    return ENCODING_ASCII if head.strip(_JS_WHITESPACE).lower() == "solid" else ENCODING_BINARY


def _declared_count(data: bytes) -> int:
    return struct.unpack_from("<I", data, COUNT_OFFSET)[0]


def looks_ambiguous(data: bytes) -> bool:
    """ASCII по снифферу, но длина в точности равна 84 + N*50 для заявленного N. Только для диагностики."""
    if sniff_encoding(data) != ENCODING_ASCII or len(data) < FACETS_OFFSET:
        return False
    return FACETS_OFFSET + FACET_RECORD_BYTES * _declared_count(data) == len(data)


# ---------- ASCII ----------
def _parse_coordinate(token: str | None, *, numeric_policy: str, line_no: int) -> float:
    if token is not None:
        if numeric_policy == "strict":
            if _FLOAT_PREFIX_RE.fullmatch(token):
                return float(token)
        else:
            m = _FLOAT_PREFIX_RE.match(token)
            if m:
                return float(m.group(0))
    if numeric_policy == "strict":
        raise MalformedNumericError(f"Malformed ASCII STL: non-numeric vertex coordinate {token!r} at line {line_no}")
    return float("nan")


def read_ascii_facets(data: bytes, *, numeric_policy: str = "nan") -> np.ndarray:
    """
    Строки, начинающиеся (после strip) с "vertex", по три подряд = одна грань.
    facet/outer loop/endloop/endfacet не проверяются.
    Возвращает массив (F, 3, 3) float64.
    """
    text = bytes(data).decode("utf-8", errors="replace")
    coords = []
    for line_no, raw in enumerate(text.split("\n"), 1):
        line = raw.strip()
        if not line.startswith("vertex"):
            continue
        parts = line.split()
        for i in (1, 2, 3):
            token = parts[i] if i < len(parts) else None
            coords.append(_parse_coordinate(token, numeric_policy=numeric_policy, line_no=line_no))

    n_vertices = len(coords) // 3
    if n_vertices % 3 != 0:
        raise StlFormatError(f"Malformed ASCII STL: vertex count {n_vertices} is not a multiple of 3")
    if not coords:
        return np.zeros((0, 3, 3), dtype=np.float64)
    return np.array(coords, dtype=np.float64).reshape(-1, 3, 3)


# ---------- Бинарный ----------
def read_binary_facets(data: bytes, *, numeric_policy: str = "nan") -> np.ndarray:
    """
    80 байт заголовка, <I число граней N, затем N записей по 50 байт.
    До чтения проверяем len(data) >= 84 + N*50, за конец буфера не читаем.
    Хвост после последней записи игнорируется.
    """
    if len(data) < FACETS_OFFSET:
        raise TruncatedFileError(f"Malformed binary STL: file too small ({len(data)} < {FACETS_OFFSET} bytes)")

    count = _declared_count(data)
    expected_size = FACETS_OFFSET + FACET_RECORD_BYTES * count
    if expected_size > len(data):
        raise TruncatedFileError(
            f"Malformed binary STL: triangle count {count} needs {expected_size} bytes, got {len(data)}"
        )

    records = np.frombuffer(data, dtype=_FACET_DTYPE, count=count, offset=FACETS_OFFSET)
    facets = records["vertices"].astype(np.float64)
    if numeric_policy == "strict" and facets.size and not np.isfinite(facets).all():
        raise MalformedNumericError("Malformed binary STL: non-finite vertex coordinate")
    return facets


# ---------- Геометрия ----------
def bounding_box(facets: np.ndarray) -> BoundingBox:
    """Покомпонентные min/max за один проход; NaN протекает в результат; пусто -> нули."""
    if facets.size == 0:
        return BoundingBox()
    pts = facets.reshape(-1, 3)
    mins = pts.min(axis=0); maxs = pts.max(axis=0)
    return BoundingBox(
        min=(float(mins[0]), float(mins[1]), float(mins[2])),
        max=(float(maxs[0]), float(maxs[1]), float(maxs[2])),
    )


def surface_area_exact(facets: np.ndarray) -> float:
    if facets.size == 0:
        return 0.0
    v0 = facets[:, 0]; v1 = facets[:, 1]; v2 = facets[:, 2]
    return float(0.5 * np.linalg.norm(np.cross(v1 - v0, v2 - v0), axis=1).sum())


def volume_tetra(facets: np.ndarray) -> float:
    if facets.size == 0:
        return 0.0
    v0 = facets[:, 0]; v1 = facets[:, 1]; v2 = facets[:, 2]
    cross = np.cross(v1, v2)
    vol6 = np.einsum('ij,ij->i', v0, cross)
    return float(abs(vol6.sum()) / 6.0)


def _estimate_heuristic(facets: np.ndarray, bbox: BoundingBox, estimator: dict) -> Tuple[float, float]:
    # Грубые константы: совпадение с уже сохранёнными результатами важнее точности.
    face_count = int(facets.shape[0])
    area = face_count * float(estimator.get("area_per_facet", 0.01))
    dx, dy, dz = bbox.size
    volume = dx * dy * dz * float(estimator.get("volume_shape_factor", 0.3))
    return area, volume


def _estimate_exact(facets: np.ndarray, bbox: BoundingBox, estimator: dict) -> Tuple[float, float]:
    return surface_area_exact(facets), volume_tetra(facets)


ESTIMATORS: Dict[str, Callable[[np.ndarray, BoundingBox, dict], Tuple[float, float]]] = {
    "heuristic": _estimate_heuristic,
    "exact": _estimate_exact,
}


def compute_mesh_info(facets: np.ndarray, *, mode: str = "heuristic", settings: dict | None = None) -> MeshInfo:
    mode_norm = (mode or "").strip().lower()
    estimate = ESTIMATORS.get(mode_norm)
    if estimate is None:
        raise ValueError(f"Unknown estimator mode: {mode_norm!r}")
    estimator = ((settings or DEFAULT_SETTINGS).get("estimator") or {})

    face_count = int(facets.shape[0]) if facets.ndim == 3 else 0
    bbox = bounding_box(facets)
    area, volume = estimate(facets, bbox, estimator)
    return MeshInfo(
        vertex_count=3 * face_count,
        face_count=face_count,
        bounding_box=bbox,
        surface_area=float(area),
        volume=float(volume),
    )


# ---------- Публичные операции ----------
def _resolve_modes(settings: dict, mode: str | None, numeric_policy: str | None) -> Tuple[str, str]:
    mode = mode or settings["estimator"].get("mode") or "heuristic"
    policy = numeric_policy or settings["parsing"].get("numeric_policy") or "nan"
    if policy not in NUMERIC_POLICIES:
        raise ValueError(f"Unknown numeric policy: {policy!r}")
    return mode, policy


def read_facets(data: bytes, *, numeric_policy: str = "nan") -> Tuple[str, np.ndarray]:
    encoding = sniff_encoding(data)
    if encoding == ENCODING_ASCII:
        return encoding, read_ascii_facets(data, numeric_policy=numeric_policy)
    return encoding, read_binary_facets(data, numeric_policy=numeric_policy)


def analyze_detailed(
    data: bytes,
    *,
    mode: str | None = None,
    numeric_policy: str | None = None,
    settings: dict | None = None,
) -> Analysis:
    """analyze() + диагностика. Всё или ничего: частичный результат не возвращается."""
    cfg = resolve_settings(settings)
    mode, policy = _resolve_modes(cfg, mode, numeric_policy)

    encoding, facets = read_facets(data, numeric_policy=policy)
    info = compute_mesh_info(facets, mode=mode, settings=cfg)

    declared = None
    if encoding == ENCODING_BINARY:
        declared = info.face_count
    diagnostics = Diagnostics(
        encoding=encoding,
        byte_length=len(data),
        estimator=mode.strip().lower(),
        format_ambiguous=looks_ambiguous(data),
        declared_faces=declared,
        nan_coordinates=int(np.isnan(facets).sum()),
    )
    return Analysis(info=info, diagnostics=diagnostics)


def analyze(
    data: bytes,
    *,
    mode: str | None = None,
    numeric_policy: str | None = None,
    settings: dict | None = None,
) -> MeshInfo:
    return analyze_detailed(data, mode=mode, numeric_policy=numeric_policy, settings=settings).info


def validate(filename: str, data: bytes, limits: dict | None = None) -> ValidationResult:
    """
    Единый шлюз валидации (до передачи файла и после неё). Никогда не бросает исключений:
    все отказы кодируются в ValidationResult.
    Порядок: расширение -> размер -> структура формата -> быстрые счётчики.
    """
    lim = dict(DEFAULT_SETTINGS["limits"])
    lim.update(limits or {})

    if not (filename or "").lower().endswith(".stl"):
        return _rejected(MSG_EXTENSION, ExtensionMismatchError.code)

    size = len(data)
    if size > max_file_bytes(lim):
        return _rejected(MSG_TOO_LARGE, SizeLimitExceededError.code)

    if sniff_encoding(data) == ENCODING_ASCII:
        probe = limit_value(lim, "ascii_probe_bytes")
        text = bytes(data[:probe]).decode("utf-8", errors="replace")
        if not _ASCII_HEADER_RE.search(text):
            return _rejected(MSG_ASCII_HEADER, StlFormatError.code)
        per_facet = limit_value(lim, "ascii_bytes_per_facet")
        face_count = size // per_facet
        return ValidationResult(is_valid=True, face_count=face_count, vertex_count=face_count * 3)

    if size < FACETS_OFFSET:
        return _rejected(MSG_BINARY_CORRUPTED, TruncatedFileError.code)
    face_count = _declared_count(data)
    if FACETS_OFFSET + FACET_RECORD_BYTES * face_count > size:
        return _rejected(MSG_BINARY_CORRUPTED, TruncatedFileError.code)
    return ValidationResult(is_valid=True, face_count=face_count, vertex_count=face_count * 3)


# ---------- Работа с файлами ----------
def read_stl_bytes(path: str, *, max_bytes: int | None = None) -> bytes:
    """Читает файл целиком; при max_bytes читает не больше max_bytes + 1 байта."""
    with open(path, "rb") as f:
        if max_bytes is None:
            return f.read()
        return f.read(int(max_bytes) + 1)


def analyze_file(
    path: str,
    *,
    settings: dict | None = None,
    mode: str | None = None,
    numeric_policy: str | None = None,
    require_extension: bool = False,
) -> MeshInfo:
    cfg = resolve_settings(settings)
    if require_extension and not is_stl_filename(path):
        raise ExtensionMismatchError(f"{MSG_EXTENSION}: {os.path.basename(path)}")
    limit = max_file_bytes(cfg["limits"])
    size = os.path.getsize(path)
    if size > limit:
        raise SizeLimitExceededError(f"STL limit exceeded: bytes={size} > {limit}")
    data = read_stl_bytes(path)
    return analyze(data, mode=mode, numeric_policy=numeric_policy, settings=cfg)


def validate_file(path: str, *, settings: dict | None = None) -> ValidationResult:
    """validate() для файла на диске. Ошибка чтения -> невалидный результат, не исключение."""
    cfg = resolve_settings(settings)
    limits = cfg["limits"]
    try:
        # лишний байт сверх лимита достаточен, чтобы шлюз отклонил файл по размеру
        data = read_stl_bytes(path, max_bytes=max_file_bytes(limits))
    except OSError as e:
        return _rejected(f"Failed to read STL file: {e}", "io_error")
    return validate(os.path.basename(path), data, limits)


def is_valid_stl(path: str, *, settings: dict | None = None) -> bool:
    try:
        analyze_file(path, settings=settings)
    except (OSError, ValueError):
        return False
    return True


# ---------- Форматирование отчёта (общий для CLI) ----------
def _fmt_vec(v) -> str:
    return "[" + ", ".join(f"{float(c):.4g}" for c in v) + "]"


def status_block_text(analysis: Analysis, file_name: str = "") -> str:
    """Текстовый диагностический блок по результату analyze_detailed()."""
    d = analysis.diagnostics
    declared = "—" if d.declared_faces is None else str(d.declared_faces)
    return (f"Файл: {file_name}\n"
            f"Кодировка: {d.encoding} | байт: {d.byte_length} | оценка: {d.estimator}\n"
            f"Граней в заголовке: {declared} | NaN-координат: {d.nan_coordinates}\n"
            f"Формат неоднозначен: {'да' if d.format_ambiguous else 'нет'}\n"
            "----------------------------------------\n")


def render_report(*,
    file_name: str,
    validation: ValidationResult,
    info: MeshInfo | None = None,
    diag_text: str = "",
) -> str:
    head = []
    if diag_text:
        head.append(diag_text.rstrip() + "\n")
    head.append(f"Файл: {file_name}\n")
    if not validation.is_valid:
        head.append(f"• Отклонён: {validation.error_message} ({validation.error_code})\n")
        return "".join(head)

    head.append(f"• Проверка: OK, граней ≈ {validation.face_count}, вершин ≈ {validation.vertex_count}\n")
    if info is None:
        return "".join(head)

    body = []
    body.append("-" * 42 + "\n")
    body.append(f"  {'Граней':<20}{info.face_count:>16}\n")
    body.append(f"  {'Вершин':<20}{info.vertex_count:>16}\n")
    body.append(f"  {'Габариты min':<20}{_fmt_vec(info.bounding_box.min):>16}\n")
    body.append(f"  {'Габариты max':<20}{_fmt_vec(info.bounding_box.max):>16}\n")
    body.append(f"  {'Площадь':<20}{info.surface_area:>16.4f}\n")
    body.append(f"  {'Объём':<20}{info.volume:>16.4f}\n")
    return "".join(head + body)
