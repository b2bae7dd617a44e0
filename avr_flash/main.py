from __future__ import annotations
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import typer
from rich import print
from rich.logging import RichHandler
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn
from rich.table import Table

from .config import APP_NAME, LOG_FILE
from .avr_transport.serial_port import known_ports
from .errors import AvrFlashError
from .firmware.devices import PROFILES, get_profile
from .firmware.io import flash_firmware, flash_simulated, image_info, load_firmware

app = typer.Typer(add_completion=False, help=f"{APP_NAME}: Intel-HEX -> AVR109 (Arduino Leonardo).")


def _log_event(kind: str, payload: dict):
    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "kind": kind,
        "payload": payload,
    }
    with open(LOG_FILE, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
        force=True,
    )


def _profile_or_exit(name: str):
    try:
        return get_profile(name)
    except KeyError as e:
        print(f"[red]{e.args[0]}[/]")
        raise typer.Exit(code=2)


@app.command()
def ports():
    """Показать доступные COM-порты и узнанные платы."""
    found = known_ports()
    if not found:
        print("[yellow]Порты не найдены.[/]")
        return
    for device, description, profile in found:
        tag = f" [green]({profile.name})[/]" if profile else ""
        print(f"[cyan]{device}[/] - {description}{tag}")


@app.command()
def profiles():
    """Известные платы и их параметры."""
    table = Table("name", "VID", "PID", "boot PID", "flash", "page")
    for p in PROFILES:
        table.add_row(p.name, f"{p.vid:04X}", f"{p.pid:04X}", f"{p.bootloader_pid:04X}",
                      str(p.flash_size), str(p.page_size))
    print(table)


@app.command("hex-info")
def hex_info(
    hex_file: Path = typer.Argument(..., help="Файл прошивки Intel-HEX"),
    device: str = typer.Option("leonardo", help="Профиль платы"),
):
    """Разобрать HEX и показать занятый диапазон памяти."""
    profile = _profile_or_exit(device)
    if not hex_file.exists():
        print(f"[red]Файл не найден:[/] {hex_file}")
        raise typer.Exit(code=2)
    try:
        image = load_firmware(hex_file, profile)
    except AvrFlashError as e:
        print(f"[red]Ошибка разбора HEX:[/] {e}")
        _log_event("hex_error", {"file": str(hex_file), "error": str(e)})
        raise typer.Exit(code=1)

    info = image_info(image, profile)
    _log_event("hex_info", {"file": str(hex_file), **info})
    print(f"[bold]{hex_file.name}[/]")
    print(json.dumps(info, ensure_ascii=False, indent=2))


@app.command()
def flash(
    hex_file: Path = typer.Argument(..., help="Файл прошивки Intel-HEX"),
    port: str = typer.Option(None, help="COM-порт платы, напр. COM3 или /dev/ttyACM0"),
    device: str = typer.Option("leonardo", help="Профиль платы"),
    demo: bool = typer.Option(False, help="Демо/симулятор вместо реальной платы"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Подробный лог протокола"),
):
    """Записать прошивку через загрузчик AVR109."""
    _setup_logging(verbose)
    profile = _profile_or_exit(device)
    if not hex_file.exists():
        print(f"[red]Файл не найден:[/] {hex_file}")
        raise typer.Exit(code=2)
    if not demo and not port:
        print("[red]Укажи COM-порт (--port) или включи --demo.[/]")
        raise typer.Exit(code=2)

    try:
        image = load_firmware(hex_file, profile)
    except AvrFlashError as e:
        print(f"[red]Ошибка разбора HEX:[/] {e}")
        _log_event("hex_error", {"file": str(hex_file), "error": str(e)})
        raise typer.Exit(code=1)

    if image.is_empty:
        print("[yellow]В файле нет данных — писать нечего.[/]")
        raise typer.Exit(code=0)

    with Progress(TextColumn("[cyan]{task.description}"), BarColumn(), DownloadColumn()) as bar:
        task = bar.add_task("запись", total=image.used_size())

        def on_progress(done: int, total: int):
            bar.update(task, completed=done, total=total)

        try:
            if demo:
                result = flash_simulated(image, profile, source=str(hex_file), progress=on_progress)
            else:
                result = flash_firmware(port, image, profile, source=str(hex_file), progress=on_progress)
        except AvrFlashError as e:
            _log_event("flash_error", {"file": str(hex_file), "port": port, "error": str(e),
                                       "type": type(e).__name__})
            print(f"[red]Ошибка прошивки ({type(e).__name__}):[/] {e}")
            raise typer.Exit(code=1)

    _log_event("flash", result)
    if result["block_mode"]:
        print(f"[green]Готово:[/] записано {result['bytes']} байт ({result['blocks']} блоков) из {result['source']}")
    else:
        print("[yellow]Загрузчик не поддерживает блочную запись — ничего не записано.[/]")
    if result.get("verified") is False:
        print("[red]Содержимое симулятора не совпало с образом![/]")
        raise typer.Exit(code=1)
    if result["exit_error"]:
        print(f"[yellow]Предупреждение:[/] {result['exit_error']}")
    print(f"\n[dim]Логи записаны в: {LOG_FILE}[/]")


if __name__ == "__main__":
    app()
