
# -*- coding: utf-8 -*-
"""
CLI-версия анализатора STL
— серверная утилита без UI: проверка загрузки + разбор сетки (ASCII и бинарный STL)

Примеры:
  python cli_stl.py part.stl --json
  python cli_stl.py a.stl b.stl --mode exact --diag --text
  python cli_stl.py upload.stl --validate-only --json

Ключевые гарантии:
• Проверка (validate) — та же функция stl_core.validate(), что и на стороне загрузки.
• Каждый файл разбирается независимо: ядро не хранит состояния между вызовами.
• Поддержка stl_settings.json (+ точечные override'ы флагом --set).
• Параллель по файлам (--workers N) с детерминированным порядком вывода.

Стабильный JSON-контракт (--json):
  {
    "success": true,
    "count": <int>,                # число успешно обработанных файлов
    "files": [
      {
        "file": "<имя файла>",
        "validation": {
          "is_valid": <bool>,
          "face_count": <int>,     # быстрый подсчёт по заголовку/размеру
          "vertex_count": <int>,
          "error_message": <str|null>,
          "error_code": <str|null>
        },
        "mesh": {                  # null при --validate-only
          "vertex_count": <int>,
          "face_count": <int>,
          "bounding_box": {"min": [x, y, z], "max": [x, y, z]},
          "surface_area": <float>,
          "volume": <float>
        },
        "diagnostics": {...} | null
      },
      ...
    ],
    "errors": [{"file": "<имя>", "error": "<текст>", "code": <str|null>}],
    "count_ok": <int>,
    "count_failed": <int>,
    "time_s": <float>
  }

Коды возврата: 0 — все файлы приняты; 1 — хотя бы один файл отклонён/не разобран;
2 — неверные аргументы или конфигурация.
"""
from __future__ import annotations

import os, sys, json, time, argparse
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import List

# импортируем ядро: формат, геометрия, валидация и форматтер отчёта
import stl_core as core

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# ---------- Утилиты ----------
def set_by_dotted_path(d: dict, path: str, value):
    """Устанавливает значение по точечному пути (например, 'limits.max_file_bytes'). Создаёт вложенные словари при необходимости."""
    keys = path.split('.')
    cur = d
    for k in keys[:-1]:
        if k not in cur or not isinstance(cur[k], dict):
            cur[k] = {}
        cur = cur[k]
    cur[keys[-1]] = value

def parse_kv_override(pairs):
    """Парсит список key=val оверрайдов из CLI (--set). Пытается привести val к bool/int/float, иначе оставляет строкой."""
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

# ---------- Загрузка конфигов ----------
class ConfigError(Exception):
    """Ошибка конфигурации CLI (нет файла, неверный JSON, валидация и т.д.)."""


def resolve_settings_path(config_dir: str | None = None) -> str | None:
    """Путь к stl_settings.json: config_dir (обязателен), иначе cwd, иначе рядом со скриптом, иначе None."""
    if config_dir:
        return os.path.join(os.path.abspath(os.path.expanduser(config_dir)), "stl_settings.json")
    for base_dir in (os.getcwd(), BASE_DIR):
        candidate = os.path.join(base_dir, "stl_settings.json")
        if os.path.exists(candidate):
            return candidate
    return None


def load_settings_via_core(config_dir: str | None, override: dict | None = None) -> tuple[dict, str]:
    """Загружает настройки через stl_core как единую точку правды. Без файла — встроенные умолчания."""
    settings_path = resolve_settings_path(config_dir)
    if settings_path is None:
        try:
            settings = core.check_settings(core.resolve_settings(override))
        except ValueError as e:
            raise ConfigError(str(e)) from None
        return settings, "(defaults)"
    try:
        settings = core.load_settings_json(settings_path, base=core.DEFAULT_SETTINGS, override=override)
    except FileNotFoundError as e:
        raise ConfigError(f"Файл конфигурации не найден: {e.filename or e}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"stl_settings.json: ошибка JSON ({e.msg}, строка {e.lineno}, колонка {e.colno})"
        ) from None
    except ValueError as e:
        raise ConfigError(str(e)) from None
    return settings, settings_path


def finalize_json_payload(payload: dict, errors: List[dict], count_ok: int) -> dict:
    """Добавляет поля ошибок и итоговые счетчики для JSON-вывода."""
    payload["errors"] = list(errors)
    payload["count_failed"] = len(errors)
    payload["count_ok"] = int(count_ok)
    payload["success"] = len(errors) == 0
    return payload

# ---------- Обработка одного файла ----------
def _process_one_file(
    path: str,
    *,
    settings: dict,
    mode: str | None,
    numeric_policy: str | None,
    validate_only: bool,
    diag: bool,
) -> dict:
    """
    Процесс-воркер: проверяет и разбирает один файл.
    Отказ валидации — не исключение, а запись с validation.is_valid == False.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"File not found: {path}")

    name = os.path.basename(path)
    limits = settings.get("limits") or {}
    data = core.read_stl_bytes(path, max_bytes=core.max_file_bytes(limits))
    validation = core.validate(name, data, limits)

    out = {
        "file": name,
        "validation": validation.to_dict(),
        "mesh": None,
        "diagnostics": None,
        "diag_text": "",
    }
    if not validation.is_valid or validate_only:
        return out

    analysis = core.analyze_detailed(data, mode=mode, numeric_policy=numeric_policy, settings=settings)
    out["mesh"] = analysis.info.to_dict()
    if diag:
        out["diagnostics"] = analysis.diagnostics.to_dict()
        out["diag_text"] = core.status_block_text(analysis, name)
    return out


def _collect(result: dict, results: List[dict], errors: List[dict]) -> None:
    results.append(result)
    validation = result["validation"]
    if not validation["is_valid"]:
        errors.append({
            "file": result["file"],
            "error": validation["error_message"],
            "code": validation["error_code"],
        })


# ---------- Обработка набора файлов ----------
def compute_for_files(
    files: List[str],
    *,
    settings: dict,
    mode: str | None = None,
    numeric_policy: str | None = None,
    validate_only: bool = False,
    diag: bool = False,
    as_json: bool = False,
    workers: int = 1,
    errors: List[dict] | None = None,
) -> dict:
    """
    Высокоуровневая функция: обрабатывает набор файлов с опциональной параллелью.
    Возвращает либо JSON payload (as_json=True), либо {"text": "..."}.
    """
    t0 = time.time()

    results: List[dict] = []
    errors = errors if errors is not None else []
    file_list = list(files)
    kwargs = dict(
        settings=settings,
        mode=mode,
        numeric_policy=numeric_policy,
        validate_only=validate_only,
        diag=diag,
    )

    # Параллель: по файлам, только если файлов>1 и workers>1
    if workers and workers > 1 and len(file_list) > 1:
        with ProcessPoolExecutor(max_workers=int(workers)) as ex:
            futs = {ex.submit(_process_one_file, p, **kwargs): p for p in file_list}
            for fut in as_completed(futs):
                path = futs[fut]
                try:
                    _collect(fut.result(), results, errors)
                except (OSError, ValueError) as exc:
                    errors.append({"file": os.path.basename(path), "error": str(exc), "code": getattr(exc, "code", None)})
    else:
        for p in file_list:
            try:
                _collect(_process_one_file(p, **kwargs), results, errors)
            except (OSError, ValueError) as exc:
                errors.append({"file": os.path.basename(p), "error": str(exc), "code": getattr(exc, "code", None)})

    # стабильный порядок для вывода/тестов
    results.sort(key=lambda r: r["file"])
    errors.sort(key=lambda e: e["file"])
    count_ok = sum(1 for r in results if r["validation"]["is_valid"])

    calc_time_s = time.time() - t0

    # ---------- JSON ----------
    if as_json:
        files_out = []
        for r in results:
            row = dict(r)
            row.pop("diag_text", None)
            files_out.append(row)
        payload = {
            "success": True,
            "count": count_ok,
            "files": files_out,
            "time_s": calc_time_s,
        }
        return finalize_json_payload(payload, errors, count_ok)

    # ---------- TEXT ----------
    lines: List[str] = []
    for r in results:
        validation = core.ValidationResult(**r["validation"])
        info = None
        if r["mesh"] is not None:
            m = r["mesh"]
            info = core.MeshInfo(
                vertex_count=m["vertex_count"],
                face_count=m["face_count"],
                bounding_box=core.BoundingBox(
                    min=tuple(m["bounding_box"]["min"]),
                    max=tuple(m["bounding_box"]["max"]),
                ),
                surface_area=m["surface_area"],
                volume=m["volume"],
            )
        lines.append(core.render_report(
            file_name=r["file"], validation=validation, info=info, diag_text=r["diag_text"],
        ))
    lines.append(f"Время обработки: {calc_time_s:.4f} с\n")
    return {"text": "\n".join(lines)}


# ---------- main ----------
def main():
    ap = argparse.ArgumentParser(description="CLI анализатор STL — проверка загрузки и метрики сетки, без UI")
    ap.add_argument('files', nargs='+', help='Пути к моделям .stl')
    ap.add_argument('--set', dest='overrides', action='append', help='Переопределить параметры stl_settings.json (format: key=val, напр. limits.max_file_bytes=1000). Можно несколько раз.')
    ap.add_argument('--config-dir', default=None, help='Папка с stl_settings.json (по умолчанию: cwd или рядом со скриптом)')
    ap.add_argument(
        '--mode',
        choices=sorted(core.ESTIMATORS),
        default=None,
        help='Оценка площади/объёма: heuristic (совместимые константы) или exact (интегрирование по граням).',
    )
    ap.add_argument('--strict-numeric', action='store_true', help='Нечисловая координата в ASCII — ошибка (иначе NaN)')
    ap.add_argument('--validate-only', action='store_true', help='Только проверка загрузки, без разбора геометрии')

    fmt = ap.add_mutually_exclusive_group()
    fmt.add_argument('--json', action='store_true', help='Вывод в JSON')
    fmt.add_argument('--text', action='store_true', help='Текстовый отчёт (по умолчанию)')

    ap.add_argument('--diag', action='store_true', help='Добавить блок диагностики разбора')
    ap.add_argument('--workers', type=int, default=1, help='Процессы для параллельной обработки файлов (>1 — включить мультипроцессинг)')

    args = ap.parse_args()

    try:
        overrides = parse_kv_override(args.overrides)
    except ValueError as e:
        print(f"Неверный формат --set: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        settings, settings_path = load_settings_via_core(args.config_dir, overrides)
    except ConfigError as e:
        print(f"Ошибка конфигурации: {e}", file=sys.stderr)
        sys.exit(2)

    print(f"[cli] using settings: {settings_path}", file=sys.stderr)

    numeric_policy = "strict" if args.strict_numeric else None

    errors: List[dict] = []
    try:
        payload = compute_for_files(
            args.files,
            settings=settings,
            mode=args.mode,
            numeric_policy=numeric_policy,
            validate_only=bool(args.validate_only),
            diag=bool(args.diag),
            as_json=bool(args.json),
            workers=int(max(1, args.workers)),
            errors=errors,
        )
    except ValueError as e:
        print(f"Ошибка обработки: {e}", file=sys.stderr)
        sys.exit(1)

    if errors and not args.json:
        for err in errors:
            print(f"[cli] файл {err.get('file')}: {err.get('error')}", file=sys.stderr)

    # вывод
    if args.json:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        print(payload["text"])

    if errors:
        sys.exit(1)

if __name__ == '__main__':
    main()
