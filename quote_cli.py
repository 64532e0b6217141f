# -*- coding: utf-8 -*-
"""
CLI расчёта цены печати по бинарному STL
— серверная утилита без UI: габариты, площадь, объём, вес и стоимость для материала

Примеры:
  python quote_cli.py part.stl --material petg --qty 3 --json
  python quote_cli.py a.stl b.stl --material pla --workers 2 --text

Ключевые гарантии:
• Ядро (quote_core) не делает ввода-вывода: CLI читает файл и передаёт байты.
• Файл, который не удалось разобрать, не роняет весь запуск: он получает
  резервную цену (fallback_price), попадает в "errors", код возврата 1.
• Поддержка pricing.json (+ точечные override'ы флагом --set).
• Параллель по файлам (--workers N) с детерминированной агрегацией.

Стабильный JSON-контракт (--json):
  {
    "success": <bool>,              # false, если хоть один файл не посчитан автоматически
    "count": <int>,                 # число файлов с результатом
    "count_ok": <int>,
    "count_failed": <int>,
    "material": "<pla|abs|petg|tpu>",
    "qty": <int>,
    "currency": "INR",
    "per_object": [
      {
        "file": "<имя файла>",
        "priced": <bool>,
        "qty": <int>,
        "unit_cost": <float>,
        "total_cost": <float>,
        # только если priced:
        "material": "<id>", "facet_count": <int>,
        "volume_mm3": <float>, "mesh_volume_mm3": <float>, "weight_g": <float>,
        "bounding_box_mm": {"width": <float>, "height": <float>, "depth": <float>},
        "surface_area_mm2": <float>,
        # только если не priced:
        "error_kind": "<empty_mesh|truncated_file|...>", "error": "<текст>",
        "calc_seconds": <float>
      }
    ],
    "summary": {"weight_g": <float>, "total_cost": <float>, "priced": <int>},
    "errors": [{"file": "<имя>", "kind": "<kind>", "error": "<текст>"}],
    "time_s": <float>
  }

Конфиг (pricing.json):
  • По умолчанию берётся из cwd (если он там есть), иначе рядом со скриптом.
  • Можно указать --config-dir для явной папки.
  • Переопределять отдельные параметры можно флагом --set key=val
    (например, --set weight_bounds_g.max=150 --set cost_multipliers.abs=1.5).
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import List

import quote_core as core
from logging_config import setup_logging

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

logger = logging.getLogger("stl_quote.cli")


# ---------- Утилиты ----------
def set_by_dotted_path(d: dict, path: str, value):
    """Устанавливает значение по точечному пути (например, 'weight_bounds_g.max')."""
    keys = path.split('.')
    cur = d
    for k in keys[:-1]:
        if k not in cur or not isinstance(cur[k], dict):
            cur[k] = {}
        cur = cur[k]
    cur[keys[-1]] = value


def parse_kv_override(pairs):
    """Парсит список key=val из --set. Пытается привести val к bool/int/float, иначе строка."""
    out = {}
    for kv in pairs or []:
        if '=' not in kv:
            raise ValueError(f"Неверный формат override '{kv}', нужен key=val")
        k, v = kv.split('=', 1)
        vv = v
        try:
            if v.lower() in ('true', 'false'):
                vv = (v.lower() == 'true')
            elif '.' in v:
                vv = float(v)
            else:
                vv = int(v)
        except ValueError:
            pass
        set_by_dotted_path(out, k, vv)
    return out


# ---------- Загрузка конфига ----------
class ConfigError(Exception):
    """Ошибка конфигурации CLI (нет файла, неверный JSON, валидация и т.д.)."""


def resolve_pricing_path(config_dir: str | None = None) -> str:
    """Путь к pricing.json по config_dir / cwd / директории скрипта."""
    if config_dir:
        base_dir = os.path.abspath(os.path.expanduser(config_dir))
    else:
        cwd_pricing = os.path.join(os.getcwd(), "pricing.json")
        base_dir = os.getcwd() if os.path.exists(cwd_pricing) else BASE_DIR
    return core.get_default_pricing_path(base_dir)


def load_pricing_via_core(config_dir: str | None, override: dict | None = None) -> tuple[dict, str]:
    pricing_path = resolve_pricing_path(config_dir)
    try:
        pricing = core.load_pricing_json(pricing_path, override=override)
    except FileNotFoundError as e:
        raise ConfigError(f"Файл конфигурации не найден: {e.filename or e}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"pricing.json: ошибка JSON ({e.msg}, строка {e.lineno}, колонка {e.colno})"
        ) from None
    except ValueError as e:
        raise ConfigError(str(e)) from None
    return pricing, pricing_path


def finalize_json_payload(payload: dict, errors: List[dict], count_ok: int) -> dict:
    """Добавляет поля ошибок и итоговые счетчики для JSON-вывода."""
    payload["errors"] = list(errors)
    payload["count_failed"] = len(errors)
    payload["count_ok"] = int(count_ok)
    payload["success"] = len(errors) == 0
    return payload


# ---------- Один файл ----------
def read_upload(path: str, max_bytes: int = core.MAX_UPLOAD_BYTES) -> bytes:
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    size = os.path.getsize(path)
    if size > max_bytes:
        raise ValueError(f"File size too large: {size} bytes > {max_bytes}")
    with open(path, "rb") as f:
        return f.read()


def _compute_one_file(
    path: str,
    *,
    pricing: dict,
    material_id: str,
    qty: int,
    max_facets: int | None,
    max_file_bytes: int,
) -> dict:
    """Процесс-воркер: считает один файл. Ошибки чтения файла пробрасываются наверх."""
    t0 = time.perf_counter()
    data = read_upload(path, max_file_bytes)
    outcome = core.quote_upload(data, material_id, qty, pricing=pricing, max_facets=max_facets)
    row = {"file": os.path.basename(path)}
    row.update(outcome.as_dict())
    row["calc_seconds"] = float(time.perf_counter() - t0)
    return row


# ---------- Расчёт набора файлов ----------
def compute_for_files(
    files: List[str],
    *,
    pricing: dict,
    material_id: str,
    qty: int,
    as_json: bool,
    workers: int = 1,
    max_facets: int | None = None,
    max_file_bytes: int = core.MAX_UPLOAD_BYTES,
    errors: List[dict] | None = None,
) -> dict:
    """
    Считает набор файлов с опциональной параллелью.
    Возвращает JSON payload (as_json=True) либо {"text": "..."}.
    """
    t0 = time.time()
    core.lookup_material(material_id)
    qty = core.coerce_qty(qty)

    results: List[dict] = []
    errors = errors if errors is not None else []
    kwargs = dict(
        pricing=pricing, material_id=material_id, qty=qty,
        max_facets=max_facets, max_file_bytes=max_file_bytes,
    )

    file_list = list(files)
    if workers and workers > 1 and len(file_list) > 1:
        with ProcessPoolExecutor(max_workers=int(workers)) as ex:
            futs = {ex.submit(_compute_one_file, p, **kwargs): p for p in file_list}
            for fut in as_completed(futs):
                path = futs[fut]
                try:
                    results.append(fut.result())
                except (OSError, ValueError) as exc:
                    errors.append({"file": os.path.basename(path), "kind": "read_error", "error": str(exc)})
    else:
        for p in file_list:
            try:
                results.append(_compute_one_file(p, **kwargs))
            except (OSError, ValueError) as exc:
                errors.append({"file": os.path.basename(p), "kind": "read_error", "error": str(exc)})

    # стабильный порядок для вывода/тестов
    results.sort(key=lambda r: r["file"])
    errors.sort(key=lambda e: e["file"])

    for r in results:
        if not r["priced"]:
            errors.append({"file": r["file"], "kind": r["error_kind"], "error": r["error"]})
            logger.warning(f"{r['file']}: priced with fallback ({r['error_kind']})")

    priced = [r for r in results if r["priced"]]
    summary = {
        "weight_g": float(sum(r["weight_g"] for r in priced)),
        "total_cost": float(sum(r["total_cost"] for r in results)),
        "priced": len(priced),
    }
    currency = str(pricing.get("currency", "INR"))
    calc_time_s = time.time() - t0

    if as_json:
        payload = {
            "success": True,
            "count": len(results),
            "material": material_id,
            "qty": qty,
            "currency": currency,
            "per_object": results,
            "summary": summary,
            "time_s": calc_time_s,
        }
        return finalize_json_payload(payload, errors, len(priced))

    lines: List[str] = []
    for r in results:
        outcome = core.QuoteOutcome(
            ok=r["priced"], qty=r["qty"], unit_cost=r["unit_cost"], total_cost=r["total_cost"],
            analysis=_analysis_from_row(r) if r["priced"] else None,
            error_kind=r.get("error_kind"), error=r.get("error"),
        )
        lines.append(core.render_report(
            file_name=r["file"], outcome=outcome, material_id=material_id,
            currency=currency, calc_time_s=r["calc_seconds"],
        ))
        lines.append("\n")
    if len(results) > 1:
        lines.append(f"TOTAL ({len(results)} files): {core.format_money(summary['total_cost'], currency)}\n")
    return {"text": "".join(lines).rstrip()}


def _analysis_from_row(r: dict) -> core.AnalysisResult:
    bb = r["bounding_box_mm"]
    return core.AnalysisResult(
        volume_mm3=r["volume_mm3"],
        weight_g=r["weight_g"],
        bounding_box=core.BoundingBox(bb["width"], bb["height"], bb["depth"]),
        surface_area_mm2=r["surface_area_mm2"],
        mesh_volume_mm3=r["mesh_volume_mm3"],
        material_id=r["material"],
        facet_count=r["facet_count"],
    )


# ---------- CLI ----------
def main(argv: List[str] | None = None):
    """Точка входа CLI: парсит аргументы, загружает pricing, считает файлы и печатает результат."""
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    ap = argparse.ArgumentParser(description="Расчёт веса и цены печати по бинарному STL")
    ap.add_argument('files', nargs='+', help='Пути к моделям .stl (бинарный формат)')
    ap.add_argument('--material', default='pla', choices=sorted(core.MATERIALS), help='Материал (по умолчанию pla)')
    ap.add_argument('--qty', type=int, default=1, help='Количество одинаковых деталей')
    ap.add_argument('--config-dir', default=None, help='Папка с pricing.json (по умолчанию: cwd или рядом со скриптом)')
    ap.add_argument('--set', dest='overrides', action='append', help='Переопределить параметр pricing (key=val, напр. weight_bounds_g.max=150). Можно несколько раз.')
    ap.add_argument('--max-facets', type=int, default=None, help='Максимум треугольников в файле (по умолчанию без ограничения)')
    ap.add_argument('--max-file-mb', type=float, default=core.MAX_UPLOAD_BYTES / (1024 * 1024), help='Максимальный размер файла, МБ')

    fmt = ap.add_mutually_exclusive_group()
    fmt.add_argument('--json', action='store_true', help='Вывод в JSON')
    fmt.add_argument('--text', action='store_true', help='Текстовый отчёт (по умолчанию)')

    ap.add_argument('--workers', type=int, default=1, help='Процессы для параллельной обработки файлов (>1 — включить мультипроцессинг)')
    ap.add_argument('-v', '--verbose', action='store_true', help='Подробный лог в stderr')

    args = ap.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        args.qty = core.coerce_qty(args.qty)
    except ValueError as e:
        print(f"Неверное значение --qty: {e}", file=sys.stderr)
        sys.exit(2)

    if args.max_facets is not None and args.max_facets < 1:
        print("Неверное значение --max-facets: нужно >= 1", file=sys.stderr)
        sys.exit(2)

    if not args.max_file_mb > 0:
        print("Неверное значение --max-file-mb: нужно > 0", file=sys.stderr)
        sys.exit(2)

    try:
        overrides = parse_kv_override(args.overrides)
    except ValueError as e:
        print(f"Неверный формат --set: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        pricing, pricing_path = load_pricing_via_core(args.config_dir, overrides)
    except ConfigError as e:
        print(f"Ошибка конфигурации: {e}", file=sys.stderr)
        sys.exit(2)

    logger.info(f"using pricing: {pricing_path}")

    errors: List[dict] = []
    payload = compute_for_files(
        args.files,
        pricing=pricing,
        material_id=args.material,
        qty=args.qty,
        as_json=bool(args.json),
        workers=int(max(1, args.workers)),
        max_facets=args.max_facets,
        max_file_bytes=int(args.max_file_mb * 1024 * 1024),
        errors=errors,
    )

    if errors and not args.json:
        for err in errors:
            print(f"[cli] файл {err.get('file')}: {err.get('error')}", file=sys.stderr)

    if args.json:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        print(payload["text"])

    if errors:
        sys.exit(1)


if __name__ == '__main__':
    main()
