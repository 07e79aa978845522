from __future__ import annotations

import logging
import os
import uuid
from datetime import date
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import create_engine

from .absences import AbsenceStore, group_and_sort_by_date
from .auth import AuthenticationSession, AuthenticationSessionStore, SessionManager
from .chores import (
    Chore,
    ChoreActivity,
    ChoreActivityStore,
    ChoreList,
    ChoreListStore,
    ChoreStore,
    activity_date_bounds,
    group_activities_by_date,
    is_activity_editable,
)
from .errors import Forbidden, Invalid, NotFound, Unauthenticated, Unexpected, WgError
from .scoring import get_adjusted_scores, scoring_window
from .settings import SettingsStore
from .time_utils import get_today, parse_date, to_utc
from .users import User, UserStore, init_db
from .values import ScoreResetInterval


COOKIE_NAME = "authentication"

db_path = os.getenv("WG_DB", "wgchores.db")
engine = create_engine(
    f"sqlite:///{db_path}",
    connect_args={"check_same_thread": False},
)
@event.listens_for(engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
init_db(engine)
user_store = UserStore(engine)
chore_list_store = ChoreListStore(engine)
chore_store = ChoreStore(engine)
activity_store = ChoreActivityStore(engine)
absence_store = AbsenceStore(engine)
auth_session_store = AuthenticationSessionStore(engine)
session_manager = SessionManager(auth_session_store, user_store)
settings_store = SettingsStore(engine)

SECURE_COOKIES = os.getenv("WG_INSECURE_COOKIES") != "1"

app = FastAPI()

logger = logging.getLogger(__name__)


@app.exception_handler(WgError)
async def handle_wg_error(request: Request, exc: WgError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(SQLAlchemyError)
async def handle_database_error(request: Request, exc: SQLAlchemyError):
    logger.exception("Database failure for %s %s", request.method, request.url.path)
    error = Unexpected()
    return JSONResponse({"error": error.message}, status_code=error.status_code)


def require_session(request: Request) -> AuthenticationSession:
    """Return the validated session of this request.

    The lookup happens once per request; the result lives on
    ``request.state`` and is gone when the request ends.
    """
    cached = getattr(request.state, "auth_session", None)
    if cached is not None:
        return cached
    auth_session = session_manager.validate(request.cookies.get(COOKIE_NAME))
    request.state.auth_session = auth_session
    return auth_session


def optional_session(request: Request) -> Optional[AuthenticationSession]:
    try:
        return require_session(request)
    except Unauthenticated:
        return None


async def read_json(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise Invalid("Request body must be JSON")
    if not isinstance(data, dict):
        raise Invalid("Request body must be a JSON object")
    return data


def _parse_date_field(data: dict, name: str, required: bool = True) -> Optional[date]:
    value = data.get(name)
    if value in (None, ""):
        if required:
            raise Invalid(f"Missing {name}")
        return None
    try:
        return parse_date(str(value))
    except ValueError:
        raise Invalid(f"Invalid date for {name}: {value!r}")


def _parse_int_field(data: dict, name: str, required: bool = True) -> Optional[int]:
    value = data.get(name)
    if value in (None, ""):
        if required:
            raise Invalid(f"Missing {name}")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise Invalid(f"Invalid number for {name}: {value!r}")


def _parse_uuid_field(data: dict, name: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(data.get(name)))
    except ValueError:
        raise Invalid(f"Invalid id for {name}")


def dump_user(user: User) -> dict[str, Any]:
    return user.model_dump(mode="json", exclude={"password_hash"})


def dump(obj) -> dict[str, Any]:
    return obj.model_dump(mode="json")


def load_chore_list(chore_list_id: uuid.UUID) -> ChoreList:
    chore_list = chore_list_store.get(chore_list_id)
    if not chore_list:
        raise NotFound("Chore list not found")
    return chore_list


def load_chore(chore_list: ChoreList, chore_id: uuid.UUID) -> Chore:
    chore = chore_store.get(chore_id)
    if not chore or chore.chore_list_id != chore_list.id:
        raise NotFound("Chore not found")
    return chore


def load_activity(chore_list: ChoreList, activity_id: uuid.UUID) -> tuple[ChoreActivity, Chore]:
    activity = activity_store.get(activity_id)
    if not activity:
        raise NotFound("Activity not found")
    chore = chore_store.get(activity.chore_id)
    if not chore or chore.chore_list_id != chore_list.id:
        raise NotFound("Activity not found")
    return activity, chore


@app.post("/login")
async def login(request: Request):
    form = await request.form()
    handle = str(form.get("handle", ""))
    password = str(form.get("password", ""))

    user, auth_session = session_manager.login(handle, password)

    response = RedirectResponse(url="/", status_code=303)
    response.set_cookie(
        COOKIE_NAME,
        auth_session.token,
        expires=to_utc(auth_session.date_expires),
        path="/",
        secure=SECURE_COOKIES,
        httponly=True,
        samesite="lax",
    )
    return response


@app.post("/logout")
async def logout(request: Request):
    auth_session = optional_session(request)
    if auth_session:
        session_manager.delete_session(auth_session)
    response = JSONResponse({"status": "ok"})
    if COOKIE_NAME in request.cookies:
        response.delete_cookie(COOKIE_NAME, path="/")
    return response


@app.get("/me")
async def me(request: Request):
    auth_session = require_session(request)
    user = user_store.get(auth_session.user_id)
    if not user:
        raise Unauthenticated()
    return JSONResponse(dump_user(user))


@app.get("/users")
async def list_users(request: Request, include_deleted: bool = False):
    require_session(request)
    users = user_store.list_users(include_deleted=include_deleted)
    return JSONResponse([dump_user(u) for u in users])


@app.post("/users")
async def create_user(request: Request):
    require_session(request)
    data = await read_json(request)
    try:
        user = user_store.create(
            str(data.get("name", "")),
            str(data.get("handle", "")),
            str(data.get("password", "")),
            str(data.get("language", "en")),
        )
    except ValueError as exc:
        raise Invalid(str(exc))
    return JSONResponse(dump_user(user), status_code=201)


@app.get("/users/{user_id}")
async def view_user(request: Request, user_id: uuid.UUID):
    require_session(request)
    user = user_store.get(user_id)
    if not user:
        raise NotFound("User not found")
    return JSONResponse(dump_user(user))


@app.post("/users/{user_id}/update")
async def update_user(request: Request, user_id: uuid.UUID):
    auth_session = require_session(request)
    user = user_store.get(user_id)
    if not user:
        raise NotFound("User not found")
    if user.is_deleted() or user.id != auth_session.user_id:
        raise Forbidden()
    data = await read_json(request)
    try:
        user = user_store.update(
            user_id,
            name=data.get("name"),
            password=data.get("password"),
            language=data.get("language"),
        )
    except ValueError as exc:
        raise Invalid(str(exc))
    return JSONResponse(dump_user(user))


@app.post("/users/{user_id}/delete")
async def delete_user(request: Request, user_id: uuid.UUID):
    require_session(request)
    user = user_store.get(user_id)
    if not user:
        raise NotFound("User not found")
    if user.is_deleted():
        raise Forbidden()
    user_store.delete(user_id)
    return JSONResponse({"status": "ok"})


@app.post("/users/{user_id}/restore")
async def restore_user(request: Request, user_id: uuid.UUID):
    require_session(request)
    user = user_store.get(user_id)
    if not user:
        raise NotFound("User not found")
    if not user.is_deleted():
        raise Forbidden()
    user_store.restore(user_id)
    return JSONResponse({"status": "ok"})


def _parse_interval(value: Any) -> ScoreResetInterval:
    try:
        return ScoreResetInterval(value or ScoreResetInterval.Never)
    except ValueError:
        raise Invalid(f"Unknown score reset interval: {value!r}")


@app.get("/chore-lists")
async def list_chore_lists(request: Request, include_deleted: bool = False):
    require_session(request)
    chore_lists = chore_list_store.list_chore_lists(include_deleted=include_deleted)
    return JSONResponse([dump(cl) for cl in chore_lists])


@app.post("/chore-lists")
async def create_chore_list(request: Request):
    require_session(request)
    data = await read_json(request)
    try:
        chore_list = chore_list_store.create(
            str(data.get("name", "")),
            data.get("description"),
            _parse_interval(data.get("score_reset_interval")),
        )
    except ValueError as exc:
        raise Invalid(str(exc))
    return JSONResponse(dump(chore_list), status_code=201)


@app.get("/chore-lists/{chore_list_id}")
async def view_chore_list(request: Request, chore_list_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    today = get_today()
    chores = chore_store.list_for_chore_list(chore_list.id)
    data = dump(chore_list)
    data["chores"] = [dict(dump(c), is_due=c.is_due(today)) for c in chores]
    return JSONResponse(data)


@app.post("/chore-lists/{chore_list_id}/update")
async def update_chore_list(request: Request, chore_list_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    if chore_list.is_deleted():
        raise Forbidden()
    data = await read_json(request)
    if "name" in data:
        chore_list.name = str(data["name"])
    if "description" in data:
        chore_list.description = data["description"]
    if "score_reset_interval" in data:
        chore_list.score_reset_interval = _parse_interval(data["score_reset_interval"])
    try:
        chore_list_store.update(chore_list)
    except ValueError as exc:
        raise Invalid(str(exc))
    return JSONResponse(dump(chore_list_store.get(chore_list_id)))


@app.post("/chore-lists/{chore_list_id}/delete")
async def delete_chore_list(request: Request, chore_list_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    if chore_list.is_deleted():
        raise Forbidden()
    chore_list_store.delete(chore_list_id)
    return JSONResponse({"status": "ok"})


@app.post("/chore-lists/{chore_list_id}/restore")
async def restore_chore_list(request: Request, chore_list_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    if not chore_list.is_deleted():
        raise Forbidden()
    chore_list_store.restore(chore_list_id)
    return JSONResponse({"status": "ok"})


@app.get("/chore-lists/{chore_list_id}/scores")
async def view_scores(request: Request, chore_list_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    today = get_today()
    window_start, window_end = scoring_window(chore_list, activity_store, today)
    scores = get_adjusted_scores(chore_list, activity_store, absence_store, today)
    return JSONResponse(
        {
            "window_start": window_start.isoformat(),
            "window_end": window_end.isoformat() if window_end else None,
            "scores": [
                {
                    "user_id": str(s.user_id),
                    "raw_score": s.raw_score,
                    "adjusted_score": s.adjusted_score,
                }
                for s in scores
            ],
        }
    )


@app.get("/chore-lists/{chore_list_id}/chores")
async def list_chores(request: Request, chore_list_id: uuid.UUID, include_deleted: bool = False):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    today = get_today()
    chores = chore_store.list_for_chore_list(chore_list.id, include_deleted=include_deleted)
    return JSONResponse([dict(dump(c), is_due=c.is_due(today)) for c in chores])


@app.post("/chore-lists/{chore_list_id}/chores")
async def create_chore(request: Request, chore_list_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    if chore_list.is_deleted():
        raise Forbidden()
    data = await read_json(request)
    chore = Chore(
        chore_list_id=chore_list.id,
        name=str(data.get("name", "")),
        points=_parse_int_field(data, "points"),
        interval_days=_parse_int_field(data, "interval_days", required=False),
        description=data.get("description"),
    )
    try:
        chore = chore_store.create(chore)
    except ValueError as exc:
        raise Invalid(str(exc))
    return JSONResponse(dump(chore), status_code=201)


@app.get("/chore-lists/{chore_list_id}/chores/{chore_id}")
async def view_chore(request: Request, chore_list_id: uuid.UUID, chore_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    chore = load_chore(chore_list, chore_id)
    data = dump(chore)
    data["is_due"] = chore.is_due()
    data["activities"] = [dump(a) for a in activity_store.list_for_chore(chore.id)]
    return JSONResponse(data)


@app.post("/chore-lists/{chore_list_id}/chores/{chore_id}/update")
async def update_chore(request: Request, chore_list_id: uuid.UUID, chore_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    chore = load_chore(chore_list, chore_id)
    if chore_list.is_deleted() or chore.is_deleted():
        raise Forbidden()
    data = await read_json(request)
    if "name" in data:
        chore.name = str(data["name"])
    if "points" in data:
        chore.points = _parse_int_field(data, "points")
    if "interval_days" in data:
        chore.interval_days = _parse_int_field(data, "interval_days", required=False)
    if "description" in data:
        chore.description = data["description"]
    try:
        chore_store.update(chore)
    except ValueError as exc:
        raise Invalid(str(exc))
    return JSONResponse(dump(chore_store.get(chore_id)))


@app.post("/chore-lists/{chore_list_id}/chores/{chore_id}/delete")
async def delete_chore(request: Request, chore_list_id: uuid.UUID, chore_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    chore = load_chore(chore_list, chore_id)
    if chore_list.is_deleted() or chore.is_deleted():
        raise Forbidden()
    chore_store.delete(chore_id)
    return JSONResponse({"status": "ok"})


@app.post("/chore-lists/{chore_list_id}/chores/{chore_id}/restore")
async def restore_chore(request: Request, chore_list_id: uuid.UUID, chore_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    chore = load_chore(chore_list, chore_id)
    if chore_list.is_deleted() or not chore.is_deleted():
        raise Forbidden()
    chore_store.restore(chore_id)
    return JSONResponse({"status": "ok"})


def _check_activity_date(activity_date: date, today: date) -> None:
    min_date, max_date = activity_date_bounds(today)
    if activity_date < min_date or activity_date > max_date:
        raise Invalid(f"Activity date must be between {min_date} and {max_date}")


def _check_activity_owner(activity: ChoreActivity, auth_session: AuthenticationSession) -> None:
    if activity.is_deleted() or activity.user_id != auth_session.user_id:
        raise Forbidden()


@app.get("/chore-lists/{chore_list_id}/activities")
async def list_activities(request: Request, chore_list_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    all_activities = activity_store.list_for_chore_list(chore_list.id, include_deleted=True)
    activities = [a for a in all_activities if not a.is_deleted()]
    deleted = [a for a in all_activities if a.is_deleted()]
    return JSONResponse(
        {
            "by_date": [
                {"date": day.isoformat(), "activities": [dump(a) for a in group]}
                for day, group in group_activities_by_date(activities, latest_first=True)
            ],
            "deleted": [dump(a) for a in deleted],
        }
    )


@app.post("/chore-lists/{chore_list_id}/activities")
async def create_activity(request: Request, chore_list_id: uuid.UUID):
    auth_session = require_session(request)
    chore_list = load_chore_list(chore_list_id)
    if chore_list.is_deleted():
        raise Forbidden()
    data = await read_json(request)
    chore = chore_store.get(_parse_uuid_field(data, "chore_id"))
    if not chore:
        raise Invalid("Unknown chore")
    if chore.is_deleted():
        raise Forbidden()
    if chore.chore_list_id != chore_list.id:
        raise Invalid("Chore belongs to a different chore list")
    activity_date = _parse_date_field(data, "date")
    _check_activity_date(activity_date, get_today())

    activity = activity_store.create(
        ChoreActivity(
            chore_id=chore.id,
            user_id=auth_session.user_id,
            date=activity_date,
            comment=data.get("comment"),
        )
    )
    chore_store.recompute_due_date(chore)
    return JSONResponse(dump(activity), status_code=201)


@app.get("/chore-lists/{chore_list_id}/activities/{activity_id}")
async def view_activity(request: Request, chore_list_id: uuid.UUID, activity_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    activity, chore = load_activity(chore_list, activity_id)
    data = dump(activity)
    data["chore"] = dump(chore)
    data["allow_edit"] = is_activity_editable(activity)
    return JSONResponse(data)


@app.post("/chore-lists/{chore_list_id}/activities/{activity_id}/update")
async def update_activity(request: Request, chore_list_id: uuid.UUID, activity_id: uuid.UUID):
    auth_session = require_session(request)
    chore_list = load_chore_list(chore_list_id)
    if chore_list.is_deleted():
        raise Forbidden()
    activity, chore = load_activity(chore_list, activity_id)
    _check_activity_owner(activity, auth_session)
    if chore.is_deleted():
        raise Forbidden()
    today = get_today()
    if not is_activity_editable(activity, today):
        raise Forbidden("Activity is too old to be edited")

    data = await read_json(request)
    new_chore = chore
    if data.get("chore_id"):
        new_chore = chore_store.get(_parse_uuid_field(data, "chore_id"))
        if not new_chore or new_chore.chore_list_id != chore_list.id:
            raise Invalid("Unknown chore")
        if new_chore.is_deleted():
            raise Forbidden()
    if "date" in data:
        activity.date = _parse_date_field(data, "date")
        _check_activity_date(activity.date, today)
    if "comment" in data:
        activity.comment = data["comment"]
    activity.chore_id = new_chore.id

    activity_store.update(activity)
    chore_store.recompute_due_date(chore)
    if new_chore.id != chore.id:
        chore_store.recompute_due_date(new_chore)
    return JSONResponse(dump(activity_store.get(activity_id)))


@app.post("/chore-lists/{chore_list_id}/activities/{activity_id}/delete")
async def delete_activity(request: Request, chore_list_id: uuid.UUID, activity_id: uuid.UUID):
    auth_session = require_session(request)
    chore_list = load_chore_list(chore_list_id)
    if chore_list.is_deleted():
        raise Forbidden()
    activity, chore = load_activity(chore_list, activity_id)
    _check_activity_owner(activity, auth_session)
    if chore.is_deleted():
        raise Forbidden()
    activity_store.delete(activity_id)
    chore_store.recompute_due_date(chore)
    return JSONResponse({"status": "ok"})


@app.post("/chore-lists/{chore_list_id}/activities/{activity_id}/restore")
async def restore_activity(request: Request, chore_list_id: uuid.UUID, activity_id: uuid.UUID):
    require_session(request)
    chore_list = load_chore_list(chore_list_id)
    if chore_list.is_deleted():
        raise Forbidden()
    activity, chore = load_activity(chore_list, activity_id)
    if not activity.is_deleted() or chore.is_deleted():
        raise Forbidden()
    activity_store.restore(activity_id)
    chore_store.recompute_due_date(chore)
    return JSONResponse({"status": "ok"})


def load_owned_absence(absence_id: uuid.UUID, auth_session: AuthenticationSession):
    absence = absence_store.get(absence_id)
    if not absence:
        raise NotFound("Absence not found")
    if absence.user_id != auth_session.user_id:
        raise Forbidden()
    return absence


@app.get("/absences")
async def list_absences(request: Request):
    require_session(request)
    today = get_today()
    all_absences = absence_store.list_absences(include_deleted=True)
    current = [a for a in all_absences if not a.is_deleted() and not a.is_in_future(today)]
    future = sorted(
        (a for a in all_absences if not a.is_deleted() and a.is_in_future(today)),
        key=lambda a: a.date_start,
        reverse=True,
    )
    deleted = [a for a in all_absences if a.is_deleted()]
    return JSONResponse(
        {
            "future": [dump(a) for a in future],
            "by_date": [
                {"date": day.isoformat(), "absences": [dump(a) for a in group]}
                for day, group in group_and_sort_by_date(current, True, today)
            ],
            "deleted": [dump(a) for a in deleted],
        }
    )


@app.post("/absences")
async def create_absence(request: Request):
    auth_session = require_session(request)
    data = await read_json(request)
    try:
        absence = absence_store.create(
            auth_session.user_id,
            _parse_date_field(data, "date_start"),
            _parse_date_field(data, "date_end", required=False),
            data.get("comment"),
        )
    except ValueError as exc:
        raise Invalid(str(exc))
    return JSONResponse(dump(absence), status_code=201)


@app.get("/absences/{absence_id}")
async def view_absence(request: Request, absence_id: uuid.UUID):
    require_session(request)
    absence = absence_store.get(absence_id)
    if not absence:
        raise NotFound("Absence not found")
    data = dump(absence)
    data["allow_edit"] = absence.is_editable()
    data["allow_delete_restore"] = absence.is_deletable()
    return JSONResponse(data)


@app.post("/absences/{absence_id}/update")
async def update_absence(request: Request, absence_id: uuid.UUID):
    auth_session = require_session(request)
    absence = load_owned_absence(absence_id, auth_session)
    if absence.is_deleted() or not absence.is_editable():
        raise Forbidden()
    data = await read_json(request)
    if "date_start" in data:
        absence.date_start = _parse_date_field(data, "date_start")
    if "date_end" in data:
        absence.date_end = _parse_date_field(data, "date_end", required=False)
    if "comment" in data:
        absence.comment = data["comment"]
    try:
        absence_store.update(absence)
    except ValueError as exc:
        raise Invalid(str(exc))
    return JSONResponse(dump(absence_store.get(absence_id)))


@app.post("/absences/{absence_id}/delete")
async def delete_absence(request: Request, absence_id: uuid.UUID):
    auth_session = require_session(request)
    absence = load_owned_absence(absence_id, auth_session)
    if absence.is_deleted() or not absence.is_deletable():
        raise Forbidden()
    absence_store.delete(absence_id)
    return JSONResponse({"status": "ok"})


@app.post("/absences/{absence_id}/restore")
async def restore_absence(request: Request, absence_id: uuid.UUID):
    auth_session = require_session(request)
    absence = load_owned_absence(absence_id, auth_session)
    if not absence.is_deleted() or not absence.is_deletable():
        raise Forbidden()
    absence_store.restore(absence_id)
    return JSONResponse({"status": "ok"})
