#!/usr/bin/env python3
"""
run.py
Einstiegspunkt für HandwerkOS: Server, Schema-Setup und Wartungsaufgaben via argparse.
"""
import argparse
import sys

from handwerkos import create_app
from handwerkos.config import Config
from handwerkos.db import ensure_schema
from handwerkos.eventlog import event_verify_chain
from handwerkos.logging_utils import setup_secure_logging
from handwerkos.timetracking import auto_stop_forgotten_entries

TASKS = ("daily-check",)


def run_task(name: str, company_id: str = None) -> int:
    if name == "daily-check":
        stopped = auto_stop_forgotten_entries(Config.CORE_DB, company_id=company_id)
        print(f"[TASK] daily-check: {len(stopped)} Timer automatisch gestoppt.")
        for item in stopped:
            print(f"  - {item['id']} (Mitarbeiter {item['employee_id']}) Ende {item['end_time']}")
        return 0
    print(f"[TASK] Unbekannte Aufgabe: {name}")
    return 2


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="HandwerkOS Runner")
    parser.add_argument("--port", type=int, default=Config.PORT, help=f"Port (Standard: {Config.PORT})")
    parser.add_argument("--host", default="127.0.0.1", help="Host (Standard: 127.0.0.1)")
    parser.add_argument("--debug", action="store_true", help="Aktiviert Flask Debug-Modus")
    parser.add_argument("--init-db", action="store_true", help="Legt das Datenbankschema an und beendet")
    parser.add_argument("--task", choices=TASKS, help="Führt eine Wartungsaufgabe aus und beendet")
    parser.add_argument("--company", default=None, help="Firma für --task (Standard: alle)")
    parser.add_argument("--verify-events", action="store_true", help="Prüft die Hash-Kette des Event-Logs")

    args = parser.parse_args(argv)
    setup_secure_logging()

    if args.init_db:
        ensure_schema(Config.CORE_DB)
        print(f"[DB] Schema bereit: {Config.CORE_DB}")
        return 0

    if args.verify_events:
        ensure_schema(Config.CORE_DB)
        ok, bad_id, reason = event_verify_chain(Config.CORE_DB)
        if ok:
            print("[EVENTS] Hash-Kette intakt.")
            return 0
        print(f"[EVENTS] Hash-Kette verletzt bei Event {bad_id}: {reason}")
        return 1

    if args.task:
        ensure_schema(Config.CORE_DB)
        return run_task(args.task, args.company)

    app = create_app()
    print(f"[START] HandwerkOS auf {args.host}:{args.port}")
    if args.debug:
        app.run(host=args.host, port=args.port, debug=True)
    else:
        from waitress import serve

        serve(app, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
