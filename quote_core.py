# -*- coding: utf-8 -*-
"""
quote_core.py — чистое ядро расчёта цены печати по бинарному STL

Цели:
- Никакого UI / CLI / файлового ввода-вывода: на вход байты, на выход числа.
- Один источник правды для: парсинга STL, геометрии (габариты/площадь/объём),
  веса с учётом заполнения, стоимости по материалу, форматирования отчёта.
- CLI и обработчик загрузки должны быть тонкими оболочками над этим модулем.

Ошибки:
- Все ожидаемые отказы — подклассы QuoteError (ValueError) со стабильным полем `kind`,
  чтобы вызывающая сторона могла ветвиться по типу ошибки.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, NamedTuple

import numpy as np

logger = logging.getLogger("stl_quote.core")


# ---------- Ошибки ----------
class QuoteError(ValueError):
    """Базовый класс ожидаемых отказов расчёта."""
    kind = "quote_error"


class ParseError(QuoteError):
    kind = "parse_error"


class EmptyMesh(ParseError):
    kind = "empty_mesh"


class TruncatedFile(ParseError):
    kind = "truncated_file"


class UnsupportedFormat(ParseError):
    kind = "unsupported_format"


class TooLarge(ParseError):
    kind = "too_large"


class NonFiniteValue(ParseError):
    kind = "non_finite_value"


class ValidationError(QuoteError):
    kind = "validation_error"


class UnknownMaterial(ValidationError):
    kind = "unknown_material"

    def __init__(self, material_id):
        super().__init__(f"Unknown material: {material_id!r}")
        self.material_id = material_id


# ---------- Утилиты ----------
def nz(v, d=0.0) -> float:
    try:
        f = float(v)
        if np.isfinite(f):
            return f
    except (TypeError, ValueError):
        pass
    return d


def deep_merge(dst: dict, src: dict) -> dict:
    """Глубокое слияние словарей src в dst (in-place). Возвращает dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


# ---------- Тираж (кол-во штук) ----------
def coerce_qty(qty) -> int:
    """
    Приводит qty к int и валидирует (>=1).
    Это обязанность вызывающего слоя: estimate_cost сам qty не проверяет.
    """
    try:
        q = int(qty)
    except (TypeError, ValueError) as e:
        raise ValueError(f"qty must be int >= 1, got: {qty!r}") from e
    if q < 1:
        raise ValueError(f"qty must be int >= 1, got: {qty!r}")
    return q


# ---------- Материалы (статическая таблица) ----------
@dataclass(frozen=True)
class MaterialProfile:
    id: str
    name: str
    density_g_cm3: float
    cost_multiplier: float


MATERIALS = MappingProxyType({
    "pla":  MaterialProfile("pla",  "PLA",  1.24, 1.0),
    "abs":  MaterialProfile("abs",  "ABS",  1.04, 1.4),
    "petg": MaterialProfile("petg", "PETG", 1.27, 1.2),
    "tpu":  MaterialProfile("tpu",  "TPU",  1.20, 1.2),
})


def lookup_material(material_id: str) -> MaterialProfile:
    try:
        return MATERIALS[material_id]
    except (KeyError, TypeError):
        raise UnknownMaterial(material_id) from None


# ---------- Настройки ценообразования ----------
DEFAULT_PRICING = {
    "currency": "INR",
    "infill_fraction": 0.30,
    "safety_multiplier": 1.5,
    "rate_per_gram": 9.0,
    "weight_bounds_g": {"min": 2.0, "max": 200.0},
    "cost_multipliers": {},
    "fallback_price": 50.0,
}

# 10 МБ — лимит загрузки в исходном обработчике
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def default_pricing() -> dict:
    return json.loads(json.dumps(DEFAULT_PRICING))


def get_default_config_dir() -> str:
    """Папка, где по умолчанию лежит pricing.json: рядом с quote_core.py."""
    return os.path.dirname(os.path.abspath(__file__))


def get_default_pricing_path(config_dir: str | None = None) -> str:
    base = config_dir or get_default_config_dir()
    return os.path.join(base, "pricing.json")


def validate_pricing(pricing: dict) -> dict:
    """Проверяет словарь настроек; ValueError с понятным текстом при ошибке."""
    for key in ("infill_fraction", "safety_multiplier", "rate_per_gram", "fallback_price"):
        value = pricing.get(key)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not np.isfinite(value) or value < 0:
            raise ValueError(f"pricing: '{key}' must be a non-negative number, got {value!r}")

    bounds = pricing.get("weight_bounds_g")
    if not isinstance(bounds, dict):
        raise ValueError("pricing: 'weight_bounds_g' must be an object {min, max}")
    lo, hi = nz(bounds.get("min"), -1.0), nz(bounds.get("max"), -1.0)
    if lo < 0 or hi < 0 or lo > hi:
        raise ValueError(f"pricing: invalid weight_bounds_g min={bounds.get('min')!r} max={bounds.get('max')!r}")

    overrides = pricing.get("cost_multipliers") or {}
    if not isinstance(overrides, dict):
        raise ValueError("pricing: 'cost_multipliers' must be an object {material: multiplier}")
    for material_id, mult in overrides.items():
        if material_id not in MATERIALS:
            raise ValueError(f"pricing: cost_multipliers has unknown material {material_id!r}")
        if nz(mult, -1.0) < 0:
            raise ValueError(f"pricing: cost multiplier for {material_id!r} must be >= 0, got {mult!r}")
    return pricing


def load_pricing_json(path: str, *, base: dict | None = None, override: dict | None = None) -> dict:
    """
    pricing.json -> pricing dict.
    base: если задан, то в него мерджится файл (по умолчанию DEFAULT_PRICING).
    override: мердж поверх результата (например, --set в CLI).
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    with open(path, "r", encoding="utf-8") as f:
        cfg = json.load(f)

    if not isinstance(cfg, dict):
        raise ValueError("pricing.json: expected object")

    out = json.loads(json.dumps(base)) if isinstance(base, dict) else default_pricing()
    deep_merge(out, cfg)
    if override:
        deep_merge(out, override)
    return validate_pricing(out)


def _pricing(pricing: dict | None) -> dict:
    return DEFAULT_PRICING if pricing is None else pricing


# ---------- Бинарный STL ----------
STL_HEADER_BYTES = 80
STL_PREFIX_BYTES = STL_HEADER_BYTES + 4
STL_FACET_BYTES = 50

FACET_DTYPE = np.dtype([
    ("normal", "<f4", (3,)),
    ("vertices", "<f4", (3, 3)),
    ("attr", "<u2"),
])

_ASCII_STL_MESSAGE = "ASCII STL detected; export the file as Binary STL"


class Facet(NamedTuple):
    normal: tuple
    vertices: tuple


@dataclass(frozen=True, eq=False)
class Mesh:
    """Набор треугольников в порядке файла. Массивы только для чтения."""
    normals: np.ndarray
    vertices: np.ndarray
    header: bytes = field(default=b"", repr=False)

    def __len__(self) -> int:
        return int(self.normals.shape[0])

    @property
    def facet_count(self) -> int:
        return len(self)

    @property
    def byte_length(self) -> int:
        return STL_PREFIX_BYTES + STL_FACET_BYTES * len(self)

    def facets(self) -> Iterator[Facet]:
        for n, tri in zip(self.normals.tolist(), self.vertices.tolist()):
            yield Facet(tuple(n), tuple(tuple(v) for v in tri))


_UTF8_BOM = b"\xef\xbb\xbf"


def _looks_like_ascii_stl(prefix: bytes) -> bool:
    stripped = prefix.lstrip().removeprefix(_UTF8_BOM).lstrip()
    if not stripped.lower().startswith(b"solid"):
        return False
    text = prefix.decode("utf-8", errors="ignore").lower()
    return ("facet" in text) and ("vertex" in text)


def parse_stl_bytes(data: bytes, *, max_facets: int | None = None) -> Mesh:
    """
    Разбирает бинарный STL из буфера.

    Порядок проверок: формат -> пустой -> лимит -> обрезанный файл -> NaN/inf.
    Лимит max_facets проверяется до выделения памяти под треугольники.
    """
    buf = memoryview(data).cast("B")
    size = buf.nbytes
    ascii_like = _looks_like_ascii_stl(bytes(buf[:8192]))

    if size < STL_PREFIX_BYTES:
        if ascii_like:
            raise UnsupportedFormat(_ASCII_STL_MESSAGE)
        raise UnsupportedFormat(f"Not a binary STL: {size} bytes, header and triangle count need {STL_PREFIX_BYTES}")

    count = int(np.frombuffer(buf, dtype="<u4", count=1, offset=STL_HEADER_BYTES)[0])
    expected_size = STL_PREFIX_BYTES + STL_FACET_BYTES * count

    if expected_size != size and ascii_like:
        raise UnsupportedFormat(_ASCII_STL_MESSAGE)
    if count == 0:
        raise EmptyMesh("Binary STL declares zero triangles")
    if max_facets is not None and count > max_facets:
        raise TooLarge(f"STL limit exceeded: triangles={count} > {max_facets}")
    if size < expected_size:
        raise TruncatedFile(
            f"Malformed binary STL: {count} triangles need {expected_size} bytes, got {size}"
        )

    records = np.frombuffer(buf, dtype=FACET_DTYPE, count=count, offset=STL_PREFIX_BYTES)
    normals = np.array(records["normal"])
    vertices = np.array(records["vertices"])
    if not (np.isfinite(normals).all() and np.isfinite(vertices).all()):
        raise NonFiniteValue("Malformed binary STL: non-finite normal or vertex coordinate")

    normals.setflags(write=False)
    vertices.setflags(write=False)
    if size > expected_size:
        logger.debug(f"Ignoring {size - expected_size} trailing bytes after {count} triangles")
    logger.debug(f"Parsed binary STL: {count} triangles")
    return Mesh(normals=normals, vertices=vertices, header=bytes(buf[:STL_HEADER_BYTES]))


# ---------- Геометрия ----------
ANALYZE_CHUNK_FACETS = 65536


@dataclass(frozen=True)
class BoundingBox:
    width: float
    height: float
    depth: float

    def as_dict(self) -> dict:
        return {"width": self.width, "height": self.height, "depth": self.depth}


@dataclass(frozen=True)
class MeshGeometry:
    bounding_box: BoundingBox
    surface_area_mm2: float
    signed_volume_mm3: float


def triangle_areas(tris: np.ndarray) -> np.ndarray:
    """Площади треугольников (K,3,3) -> (K,). Вырожденные дают ровно 0."""
    v0 = tris[:, 0]; v1 = tris[:, 1]; v2 = tris[:, 2]
    return 0.5 * np.linalg.norm(np.cross(v1 - v0, v2 - v0), axis=1)


def analyze_geometry(mesh: Mesh, *, chunk_facets: int = ANALYZE_CHUNK_FACETS) -> MeshGeometry:
    """
    Габариты, площадь поверхности и знаковый объём за один проход.

    Объём по теореме о дивергенции: sum( (1/3) * dot(n, centroid) * area ),
    где n — нормаль, записанная в файле (не пересчитанная). Знак зависит от
    ориентации нормалей; abs() берётся при расчёте веса.
    Проход идёт блоками по chunk_facets, доп. память не растёт с N.
    """
    n = len(mesh)
    if n == 0:
        return MeshGeometry(BoundingBox(0.0, 0.0, 0.0), 0.0, 0.0)

    step = max(1, int(chunk_facets))
    mins = np.full(3, np.inf)
    maxs = np.full(3, -np.inf)
    area_total = 0.0
    volume_total = 0.0

    for start in range(0, n, step):
        tris = mesh.vertices[start:start + step].astype(np.float64)
        normals = mesh.normals[start:start + step].astype(np.float64)

        pts = tris.reshape(-1, 3)
        mins = np.minimum(mins, pts.min(axis=0))
        maxs = np.maximum(maxs, pts.max(axis=0))

        areas = triangle_areas(tris)
        area_total += float(areas.sum())

        centroids = (tris[:, 0] + tris[:, 1] + tris[:, 2]) / 3.0
        volume_total += float((np.einsum("ij,ij->i", normals, centroids) * areas).sum() / 3.0)

    dx, dy, dz = (maxs - mins).tolist()
    return MeshGeometry(
        bounding_box=BoundingBox(dx, dy, dz),
        surface_area_mm2=area_total,
        signed_volume_mm3=volume_total,
    )


# ---------- Вес и стоимость ----------
def effective_volume_mm3(raw_volume_mm3: float, pricing: dict | None = None) -> float:
    """
    Объём пластика: |V| * заполнение * коэффициент запаса.
    NaN отклоняется; бесконечный объём остаётся бесконечным и упирается в верхнюю границу веса.
    """
    p = _pricing(pricing)
    v = float(raw_volume_mm3)
    if np.isnan(v):
        raise ValidationError(f"raw volume must be a number, got {raw_volume_mm3!r}")
    return abs(v) * nz(p.get("infill_fraction"), 0.30) * nz(p.get("safety_multiplier"), 1.5)


def estimate_weight(raw_volume_mm3: float, material_id: str, pricing: dict | None = None) -> float:
    """
    Вес печати в граммах, зажатый в [min, max] (по умолчанию [2, 200]).
    Объём в мм³, плотность в г/см³, отсюда деление на 1000.
    """
    material = lookup_material(material_id)
    p = _pricing(pricing)
    bounds = p.get("weight_bounds_g") or {}
    lo = nz(bounds.get("min"), 2.0)
    hi = nz(bounds.get("max"), 200.0)

    weight = effective_volume_mm3(raw_volume_mm3, p) * material.density_g_cm3 / 1000.0
    return max(lo, min(weight, hi))


def cost_multiplier(material_id: str, pricing: dict | None = None) -> float:
    material = lookup_material(material_id)
    overrides = _pricing(pricing).get("cost_multipliers") or {}
    return nz(overrides.get(material_id), material.cost_multiplier)


def estimate_cost(weight_g: float, material_id: str, qty=1, pricing: dict | None = None) -> float:
    """weight * multiplier * rate_per_gram * qty. qty здесь не валидируется."""
    mult = cost_multiplier(material_id, pricing)
    rate = nz(_pricing(pricing).get("rate_per_gram"), 9.0)
    unit_cost = nz(weight_g) * mult * rate
    return unit_cost * qty


# ---------- Полный анализ ----------
@dataclass(frozen=True)
class AnalysisResult:
    volume_mm3: float
    weight_g: float
    bounding_box: BoundingBox
    surface_area_mm2: float
    mesh_volume_mm3: float
    material_id: str
    facet_count: int

    def as_dict(self) -> dict:
        return {
            "material": self.material_id,
            "facet_count": self.facet_count,
            "volume_mm3": self.volume_mm3,
            "mesh_volume_mm3": self.mesh_volume_mm3,
            "weight_g": self.weight_g,
            "bounding_box_mm": self.bounding_box.as_dict(),
            "surface_area_mm2": self.surface_area_mm2,
        }


def analyze_mesh(mesh: Mesh, material_id: str, *, pricing: dict | None = None) -> AnalysisResult:
    material = lookup_material(material_id)
    geo = analyze_geometry(mesh)
    mesh_volume = abs(geo.signed_volume_mm3)
    weight = estimate_weight(mesh_volume, material_id, pricing)
    bb = geo.bounding_box
    logger.info(
        f"STL analysis: {len(mesh)} triangles, mesh volume {mesh_volume:.3f} mm³, "
        f"weight {weight:.3f} g ({material.name}), "
        f"{bb.width:.1f} × {bb.height:.1f} × {bb.depth:.1f} mm"
    )
    return AnalysisResult(
        volume_mm3=effective_volume_mm3(mesh_volume, pricing),
        weight_g=weight,
        bounding_box=bb,
        surface_area_mm2=geo.surface_area_mm2,
        mesh_volume_mm3=mesh_volume,
        material_id=material_id,
        facet_count=len(mesh),
    )


def analyze_stl(data: bytes, material_id: str, *, pricing: dict | None = None,
                max_facets: int | None = None) -> AnalysisResult:
    """Байты STL -> AnalysisResult. Неизвестный материал отклоняется до разбора файла."""
    lookup_material(material_id)
    mesh = parse_stl_bytes(data, max_facets=max_facets)
    return analyze_mesh(mesh, material_id, pricing=pricing)


# ---------- Граница загрузки (результат вместо исключения) ----------
@dataclass(frozen=True)
class QuoteOutcome:
    ok: bool
    qty: int
    unit_cost: float
    total_cost: float
    analysis: AnalysisResult | None = None
    error_kind: str | None = None
    error: str | None = None

    def as_dict(self) -> dict:
        out = {
            "priced": self.ok,
            "qty": self.qty,
            "unit_cost": self.unit_cost,
            "total_cost": self.total_cost,
        }
        if self.analysis is not None:
            out.update(self.analysis.as_dict())
        if not self.ok:
            out["error_kind"] = self.error_kind
            out["error"] = self.error
        return out


def quote_upload(data: bytes, material_id: str, qty=1, *, pricing: dict | None = None,
                 max_facets: int | None = None) -> QuoteOutcome:
    """
    Расчёт для обработчика загрузки: любая QuoteError превращается в
    неуспешный результат с резервной ценой (fallback_price за штуку).
    Неверный qty — ошибка вызывающего кода, пробрасывается как ValueError.
    """
    q = coerce_qty(qty)
    p = _pricing(pricing)
    try:
        analysis = analyze_stl(data, material_id, pricing=p, max_facets=max_facets)
        unit_cost = estimate_cost(analysis.weight_g, material_id, 1, p)
    except QuoteError as e:
        logger.warning(f"STL analysis failed, using fallback price: {e}")
        fallback = nz(p.get("fallback_price"), 50.0)
        return QuoteOutcome(
            ok=False, qty=q, unit_cost=fallback, total_cost=fallback * q,
            error_kind=e.kind, error=str(e),
        )
    return QuoteOutcome(
        ok=True, qty=q, unit_cost=unit_cost, total_cost=unit_cost * q, analysis=analysis,
    )


# ---------- Форматирование ----------
def format_weight(weight_g: float) -> str:
    w = nz(weight_g)
    if w < 1:
        return f"{w * 1000:.0f} mg"
    if w < 1000:
        return f"{w:.1f} g"
    return f"{w / 1000:.2f} kg"


def format_volume(volume_mm3: float) -> str:
    v = nz(volume_mm3)
    if v < 1000:
        return f"{v:.0f} mm³"
    if v < 1_000_000:
        return f"{v / 1000:.1f} cm³"
    return f"{v / 1_000_000:.2f} L"


def format_money(v: float, currency: str = "INR") -> str:
    s = f"{nz(v):,.2f}"
    if s.endswith(".00"):
        s = s[:-3]
    sign = {"INR": "₹", "USD": "$", "EUR": "€"}.get(currency)
    return f"{sign}{s}" if sign else f"{s} {currency}"


def _line(label: str, value: str, width: int = 14) -> str:
    return f"  {label:<24}{value:>{width}}\n"


def render_report(*, file_name: str, outcome: QuoteOutcome, material_id: str,
                  currency: str = "INR", calc_time_s: float = 0.0) -> str:
    """Текстовый отчёт по одному файлу (для CLI)."""
    material = lookup_material(material_id)
    out = [f"File: {file_name}\n"]
    a = outcome.analysis
    if a is not None:
        bb = a.bounding_box
        out.append(f"• Size: {bb.width:.1f} × {bb.height:.1f} × {bb.depth:.1f} mm | {a.facet_count} triangles\n")
        out.append(f"• Volume: mesh {format_volume(a.mesh_volume_mm3)} → print {format_volume(a.volume_mm3)}\n")
        out.append(f"• Surface: {a.surface_area_mm2:.1f} mm²\n")
        out.append(f"• Weight: {format_weight(a.weight_g)} | Material: {material.name}\n")
    else:
        out.append(f"• Not priced automatically ({outcome.error_kind}): {outcome.error}\n")
    out.append("-" * 40 + "\n")
    out.append(_line("Unit cost", format_money(outcome.unit_cost, currency)))
    out.append(_line("Quantity", str(outcome.qty)))
    out.append(_line("Total", format_money(outcome.total_cost, currency)))
    if calc_time_s:
        out.append(f"Calc time: {calc_time_s:.4f} s\n")
    return "".join(out)
