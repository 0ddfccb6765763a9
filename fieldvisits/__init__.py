"""
Field-visit scheduling: persistent state and integrity rules.

Layout:
- db.py                   : SQLAlchemy engine, sessions, unit of work
- models.py               : ORM models and closed enums
- schemas.py              : pydantic shapes of the JSON columns and place records
- errors.py               : rejected-write taxonomy
- validators.py           : application-level invariants
- security.py             : password hashing (passlib/bcrypt)
- user_service.py         : field agents
- organisation_service.py : catalog of places imported from the map provider
- services.py             : appointments and notes (core use cases)
- tag_service.py          : per-user tags and appointment tagging
- route_service.py        : per-day visit order computed by the map provider
- activity_service.py     : append-only audit trail
- cli.py                  : simulates the external application layer
"""
