#!/usr/bin/env python3
"""
Script para borrar el historial de eventos y empezar de nuevo
"""
import argparse
from pathlib import Path
from typing import Callable

from backend import db
from backend.config import load_settings
from backend.store import StudentStore


def reset_events(store: StudentStore, assume_yes: bool = False, ask: Callable[[str], str] = input) -> int:
    """Elimina todos los eventos. Devuelve cuántos se borraron."""
    count_before = store.count_events()
    print(f"📊 Eventos actuales en la BD: {count_before}")

    if count_before == 0:
        print("✅ La base de datos ya está vacía")
        return 0

    if not assume_yes:
        print("\n⚠️  ADVERTENCIA: Esto eliminará todo el historial de eventos.")
        response = ask("¿Deseas continuar? (si/no): ").strip().lower()
        if response not in ["si", "s", "yes", "y"]:
            print("❌ Operación cancelada")
            return 0

    deleted = store.delete_all_events()
    print(f"✅ Se eliminaron {deleted} eventos")
    return deleted


def show_database_info(database_url: str) -> None:
    """Muestra información de la base de datos (solo SQLite)"""
    if not database_url.startswith("sqlite:///"):
        print(f"\n💾 Base de datos: {database_url}")
        return

    db_path = Path(database_url.replace("sqlite:///", "", 1))
    if db_path.exists():
        size_mb = db_path.stat().st_size / (1024 * 1024)
        print(f"\n💾 Base de datos: {db_path}")
        print(f"   Tamaño: {size_mb:.2f} MB")
    else:
        print(f"\n💾 No existe la base de datos en: {db_path}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Borra todos los eventos de ExamWatch.")
    parser.add_argument("--yes", action="store_true", help="No pedir confirmación.")
    args = parser.parse_args()

    settings = load_settings()
    engine = db.make_engine(settings.database_url)
    db.init_db(engine)
    store = StudentStore(db.make_session_factory(engine))

    print("=" * 60)
    print("🗑️  LIMPIAR EVENTOS - EXAMWATCH")
    print("=" * 60)

    show_database_info(settings.database_url)
    print()
    reset_events(store, assume_yes=args.yes)
    engine.dispose()


if __name__ == "__main__":
    main()
