from __future__ import annotations

import argparse
import json
import logging
from datetime import date
from pathlib import Path

from fieldvisits import organisation_service, route_service, tag_service, user_service
from fieldvisits.errors import IntegrityRuleError, InvariantViolation
from fieldvisits.services import (
    cancel_appointment,
    create_appointment,
    daily_agenda,
    init_db,
    list_appointments,
    reschedule_appointment,
    update_status,
)


def _load_json(text: str, source: str):
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise InvariantViolation(f"{source} is not valid JSON: {e}") from None


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    print("Database initialised.")


def cmd_add_user(args: argparse.Namespace) -> None:
    uid = user_service.create_user(args.email, args.password, args.first_name, args.last_name, args.phone)
    print(f"User created: {uid}")


def cmd_import_place(args: argparse.Namespace) -> None:
    """
    Simulates the discovery flow: a provider search result (JSON file) or the
    minimum fields given on the command line.
    """
    if args.json:
        try:
            text = Path(args.json).read_text(encoding="utf-8")
        except OSError as e:
            raise InvariantViolation(f"cannot read {args.json}: {e.strerror}") from None
        record = _load_json(text, args.json)
    else:
        record = {"place_id": args.place_id, "name": args.name, "lat": args.lat, "lng": args.lng}
    oid = organisation_service.import_place(record)
    print(f"Organisation imported: {oid}")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "users":
        for u in user_service.list_users(active_only=False):
            print(f"{u.id} | {u.email} | {u.full_name} | {'active' if u.is_active else 'inactive'}")
    elif args.entity == "organisations":
        for o in organisation_service.search_organisations(name=args.name):
            print(f"{o.id} | {o.name} | {o.latitude},{o.longitude} | {o.type.value if o.type else '-'}")
    elif args.entity == "appointments":
        day = date.fromisoformat(args.day) if args.day else None
        for a in list_appointments(args.user_id, day=day):
            print(f"{a.id} | {a.scheduled_date:%Y-%m-%d} {a.scheduled_time} | {a.status.value} | {a.title}")
    elif args.entity == "tags":
        for t in tag_service.list_tags(args.user_id):
            print(f"{t.id} | {t.name} | {t.color}")


def cmd_agenda(args: argparse.Namespace) -> None:
    rows = daily_agenda(args.user_id, date.fromisoformat(args.day))
    if not rows:
        print("No visits.")
        return
    for r in rows:
        print(f"{r['time']} | {r['duration']} min | {r['status']} | {r['title']} @ {r['organisation']}")


def cmd_book(args: argparse.Namespace) -> None:
    aid = create_appointment(
        user_id=args.user_id,
        organisation_id=args.organisation_id,
        title=args.title,
        scheduled_date=date.fromisoformat(args.day),  # format: 2026-01-14
        scheduled_time=args.time,
        duration=args.duration,
        priority=args.priority,
        description=args.description,
    )
    print(f"Appointment ID: {aid}")


def cmd_status(args: argparse.Namespace) -> None:
    a = update_status(args.appointment_id, args.status)
    print(f"{a.id} -> {a.status.value}")


def cmd_cancel(args: argparse.Namespace) -> None:
    cancel_appointment(args.appointment_id, args.reason)
    print("Cancelled.")


def cmd_reschedule(args: argparse.Namespace) -> None:
    result = reschedule_appointment(args.appointment_id, date.fromisoformat(args.day), args.time)
    print(f"Rescheduled as: {result.appointment_id}")


def cmd_tag(args: argparse.Namespace) -> None:
    name = args.name.strip()  # stored names are stripped
    existing = {t.name: t.id for t in tag_service.list_tags(args.user_id)}
    tag_id = existing.get(name) or tag_service.create_tag(args.user_id, name)
    added = tag_service.tag_appointment(args.appointment_id, tag_id)
    print("Tagged." if added else "Already tagged.")


def cmd_route(args: argparse.Namespace) -> None:
    metadata = _load_json(args.metadata, "--metadata") if args.metadata else None
    rid = route_service.create_route(args.user_id, date.fromisoformat(args.day), args.appointment_ids, metadata)
    print(f"Route ID: {rid}")


def cmd_delete_user(args: argparse.Namespace) -> None:
    counts = user_service.delete_user(args.user_id)
    print("Deleted. " + ", ".join(f"{k}: {v}" for k, v in counts.items()))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="fieldvisits", description="Field visits CLI (simulates the application layer)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Create the tables")
    p_init.set_defaults(func=cmd_init)

    p_user = sub.add_parser("add-user", help="Create a field agent")
    p_user.add_argument("--email", required=True)
    p_user.add_argument("--password", required=True)
    p_user.add_argument("--first-name", default=None)
    p_user.add_argument("--last-name", default=None)
    p_user.add_argument("--phone", default=None)
    p_user.set_defaults(func=cmd_add_user)

    p_place = sub.add_parser("import-place", help="Import a place found through the map provider")
    p_place.add_argument("--json", default=None, help="File with one provider search result")
    p_place.add_argument("--place-id", default=None)
    p_place.add_argument("--name", default=None)
    p_place.add_argument("--lat", default=None)
    p_place.add_argument("--lng", default=None)
    p_place.set_defaults(func=cmd_import_place)

    p_list = sub.add_parser("list", help="List entities")
    p_list.add_argument("entity", choices=["users", "organisations", "appointments", "tags"])
    p_list.add_argument("--user-id", default=None)
    p_list.add_argument("--day", default=None, help="ISO date, e.g. 2026-01-14")
    p_list.add_argument("--name", default=None)
    p_list.set_defaults(func=cmd_list)

    p_agenda = sub.add_parser("agenda", help="A user's visits for one day")
    p_agenda.add_argument("--user-id", required=True)
    p_agenda.add_argument("--day", required=True)
    p_agenda.set_defaults(func=cmd_agenda)

    p_book = sub.add_parser("book", help="Create an appointment")
    p_book.add_argument("--user-id", required=True)
    p_book.add_argument("--organisation-id", required=True)
    p_book.add_argument("--title", required=True)
    p_book.add_argument("--day", required=True, help="ISO date, e.g. 2026-01-14")
    p_book.add_argument("--time", required=True, help="HH:MM")
    p_book.add_argument("--duration", type=int, default=60)
    p_book.add_argument("--priority", default="medium", choices=["low", "medium", "high", "urgent"])
    p_book.add_argument("--description", default=None)
    p_book.set_defaults(func=cmd_book)

    p_status = sub.add_parser("status", help="Change an appointment's status")
    p_status.add_argument("--appointment-id", required=True)
    p_status.add_argument("--status", required=True)
    p_status.set_defaults(func=cmd_status)

    p_cancel = sub.add_parser("cancel", help="Cancel an appointment")
    p_cancel.add_argument("--appointment-id", required=True)
    p_cancel.add_argument("--reason", required=True)
    p_cancel.set_defaults(func=cmd_cancel)

    p_resched = sub.add_parser("reschedule", help="Move an appointment to a new slot")
    p_resched.add_argument("--appointment-id", required=True)
    p_resched.add_argument("--day", required=True)
    p_resched.add_argument("--time", required=True)
    p_resched.set_defaults(func=cmd_reschedule)

    p_tag = sub.add_parser("tag", help="Tag an appointment (creates the tag if needed)")
    p_tag.add_argument("--user-id", required=True)
    p_tag.add_argument("--appointment-id", required=True)
    p_tag.add_argument("--name", required=True)
    p_tag.set_defaults(func=cmd_tag)

    p_route = sub.add_parser("route", help="Store the provider-ordered route for a day")
    p_route.add_argument("--user-id", required=True)
    p_route.add_argument("--day", required=True)
    p_route.add_argument("--metadata", default=None, help='JSON, e.g. {"totalDistance": "25.5 km"}')
    p_route.add_argument("appointment_ids", nargs="*")
    p_route.set_defaults(func=cmd_route)

    p_del = sub.add_parser("delete-user", help="Delete a user and everything they own")
    p_del.add_argument("--user-id", required=True)
    p_del.set_defaults(func=cmd_delete_user)

    return p


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()  # make sure the tables exist
    try:
        args.func(args)
    except IntegrityRuleError as e:
        print(f"Rejected: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
