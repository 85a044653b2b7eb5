import functools
import hmac
import json
import logging
import os
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from config import configure_logging, get_settings
from db import init_db
from errors import AuthorizationError, CommutePoolError, InputError, NotFound, StorageUnavailable, TransientError
from schemas import ServiceContext
import store
import triggers

logger = logging.getLogger(__name__)


def get_engine():
    return triggers.build_engine()


@asynccontextmanager
async def lifespan(app):
    configure_logging()
    init_db()
    yield


def _dump(obj):
    return obj.model_dump(mode="json")


async def _body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except ValueError:
        raise InputError("request body is not valid JSON")
    if not isinstance(payload, dict):
        raise InputError("request body must be a JSON object")
    return payload


def _require(payload: dict, *keys):
    for k in keys:
        if k not in payload:
            raise InputError(f"missing {k}")


def service_context(request: Request) -> ServiceContext:
    supplied = request.headers.get("x-service-key", "")
    if not hmac.compare_digest(supplied.encode(), get_settings().service_api_key.encode()):
        raise AuthorizationError("valid X-Service-Key header required")
    return ServiceContext(actor=request.headers.get("x-actor") or "service")


def handles_errors(handler):
    @functools.wraps(handler)
    async def wrapper(request: Request):
        try:
            return await handler(request)
        except NotFound as exc:
            return JSONResponse({"error": str(exc)}, status_code=404)
        except InputError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)
        except AuthorizationError as exc:
            return JSONResponse({"error": str(exc)}, status_code=401)
        except StorageUnavailable as exc:
            logger.error("storage unavailable: %s", exc)
            return JSONResponse({"error": str(exc), "retryable": True}, status_code=503)
        except TransientError as exc:
            return JSONResponse({"error": str(exc), "retryable": True}, status_code=409)
    return wrapper


def _int_param(request: Request, name: str) -> int:
    try:
        return int(request.path_params[name])
    except ValueError:
        raise InputError(f"{name} must be an integer")


# ────────────────────────── users, locations, opt-ins ───────────────────────

@handles_errors
async def create_user(request: Request):
    payload = await _body(request)
    _require(payload, "full_name")
    user = store.create_user(
        payload["full_name"],
        default_role=payload.get("default_role", "RIDER"),
        vehicle_capacity=payload.get("vehicle_capacity"),
        email=payload.get("email"),
    )
    return JSONResponse(_dump(user), status_code=201)


@handles_errors
async def create_location(request: Request):
    payload = await _body(request)
    _require(payload, "user_id", "name", "lat", "lng")
    loc = store.create_pickup_location(
        payload["user_id"], payload["name"], payload["lat"], payload["lng"],
        description=payload.get("description", ""), is_default=payload.get("is_default", False),
    )
    return JSONResponse(_dump(loc), status_code=201)


@handles_errors
async def create_schedule(request: Request):
    payload = await _body(request)
    _require(payload, "user_id", "day_of_week", "start_time", "pickup_location_id")
    sched = store.create_scheduled_opt_in(
        payload["user_id"], payload["day_of_week"], payload["start_time"], payload["pickup_location_id"]
    )
    return JSONResponse(_dump(sched), status_code=201)


@handles_errors
async def create_opt_in(request: Request):
    payload = await _body(request)
    _require(payload, "user_id", "commute_date", "time_window_start", "time_window_end", "pickup_location_id")
    opt_in = store.create_opt_in(
        payload["user_id"], payload["commute_date"], payload["time_window_start"], payload["time_window_end"],
        payload["pickup_location_id"], role=payload.get("role"),
    )
    out = {"opt_in": _dump(opt_in), "match": None}
    try:
        out["match"] = _dump(triggers.opt_in_created(opt_in.id, get_engine()))
    except CommutePoolError as exc:
        # the opt-in stands; the sweeps will pick it up
        logger.warning("immediate match for opt-in %s failed: %s", opt_in.id, exc)
    return JSONResponse(out, status_code=201)


@handles_errors
async def cancel_opt_in(request: Request):
    opt_in = store.cancel_opt_in(_int_param(request, "opt_in_id"))
    return JSONResponse(_dump(opt_in))


@handles_errors
async def pending_opt_ins(request: Request):
    commute_date = store.parse_commute_date(request.query_params.get("date"))
    return JSONResponse([_dump(o) for o in store.pending_for_date(commute_date)])


# ────────────────────────── matching (service key) ──────────────────────────

@handles_errors
async def trigger_match(request: Request):
    ctx = service_context(request)
    payload = await _body(request)
    _require(payload, "date")
    res = triggers.manual_trigger(
        payload["date"], dry_run=bool(payload.get("dry_run", False)),
        force_match=bool(payload.get("force_match", False)), engine=get_engine(), actor=ctx.actor,
    )
    return JSONResponse(_dump(res))


@handles_errors
async def sweep(request: Request):
    service_context(request)
    payload = await _body(request)
    results = triggers.scheduled_sweep(payload.get("date"), engine=get_engine())
    return JSONResponse([_dump(r) for r in results])


@handles_errors
async def match_opt_in(request: Request):
    service_context(request)
    res = triggers.opt_in_created(_int_param(request, "opt_in_id"), get_engine())
    return JSONResponse(_dump(res))


@handles_errors
async def retry(request: Request):
    service_context(request)
    payload = await _body(request)
    res = triggers.retry_sweep(
        payload.get("date"), max_retries=payload.get("max_retries"),
        dry_run=bool(payload.get("dry_run", False)), engine=get_engine(),
    )
    return JSONResponse(_dump(res))


@handles_errors
async def expand_schedules(request: Request):
    service_context(request)
    payload = await _body(request)
    res = triggers.expand_scheduled_opt_ins(payload.get("date"), dry_run=bool(payload.get("dry_run", False)),
                                            engine=get_engine())
    return JSONResponse(_dump(res))


@handles_errors
async def cleanup(request: Request):
    service_context(request)
    payload = await _body(request)
    res = triggers.cleanup_expired(payload.get("days_to_keep"), dry_run=bool(payload.get("dry_run", False)))
    return JSONResponse(_dump(res))


# ────────────────────────── rides ───────────────────────────────────────────

def _ride_payload(ride):
    out = _dump(ride)
    out["pickup_order"] = [int(x) for x in ride.pickup_order.split(",") if x]
    out["participants"] = [_dump(p) for p in store.ride_participants(ride.id)]
    return out


@handles_errors
async def get_ride(request: Request):
    ride = store.get_ride(_int_param(request, "ride_id"))
    return JSONResponse(_ride_payload(ride))


@handles_errors
async def respond_to_ride(request: Request):
    payload = await _body(request)
    _require(payload, "user_id", "accept")
    ride = store.respond_to_ride(_int_param(request, "ride_id"), payload["user_id"], bool(payload["accept"]))
    return JSONResponse(_ride_payload(ride))


routes = [
    Route("/users", create_user, methods=["POST"]),
    Route("/locations", create_location, methods=["POST"]),
    Route("/schedules", create_schedule, methods=["POST"]),
    Route("/opt-ins", create_opt_in, methods=["POST"]),
    Route("/opt-ins/pending", pending_opt_ins, methods=["GET"]),
    Route("/opt-ins/{opt_in_id}/cancel", cancel_opt_in, methods=["POST"]),
    Route("/match/trigger", trigger_match, methods=["POST"]),
    Route("/match/sweep", sweep, methods=["POST"]),
    Route("/match/opt-in/{opt_in_id}", match_opt_in, methods=["POST"]),
    Route("/match/retry", retry, methods=["POST"]),
    Route("/schedule/expand", expand_schedules, methods=["POST"]),
    Route("/maintenance/cleanup", cleanup, methods=["POST"]),
    Route("/rides/{ride_id}", get_ride, methods=["GET"]),
    Route("/rides/{ride_id}/respond", respond_to_ride, methods=["POST"]),
]

app = Starlette(debug=False, routes=routes, lifespan=lifespan)

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
