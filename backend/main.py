import contextlib
from fastapi import FastAPI
import asyncio

from env_loader import env_float, env_int, load_env_once
from meta import init_meta_db
from seed_data import seed_models
from api import (
    chat_router,
    threads_router,
)
from chat.runtime.stream_reaper import (
    DEFAULT_REAPER_INTERVAL_SECONDS,
    stream_reaper_loop,
)
from chat.stream_tracker import DEFAULT_STREAM_MAX_AGE_SECONDS
from chat.trace import TracePolicy
from services.chat_runtime import (
    shutdown_chat_runtime,
    start_chat_runtime,
)

app = FastAPI(title="Pro Chat Backend")


@app.on_event("startup")
async def startup() -> None:
    load_env_once()
    init_meta_db()
    seed_models()
    runtime = await start_chat_runtime()

    stop_event = asyncio.Event()
    app.state.stream_reaper_stop_event = stop_event
    app.state.stream_reaper_task = asyncio.create_task(
        stream_reaper_loop(
            runtime.tracker,
            stop_event,
            interval_s=env_float(
                "STREAM_REAPER_INTERVAL_SECONDS",
                DEFAULT_REAPER_INTERVAL_SECONDS,
                minimum=1.0,
            ),
            max_age_s=env_float(
                "STREAM_MAX_AGE_SECONDS", DEFAULT_STREAM_MAX_AGE_SECONDS, minimum=0.0
            ),
            trace_retention_days=env_int(
                "TRACE_RETENTION_DAYS", TracePolicy().retention_days, minimum=0
            ),
        )
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    stop_event = getattr(app.state, "stream_reaper_stop_event", None)
    task = getattr(app.state, "stream_reaper_task", None)
    if stop_event is not None:
        stop_event.set()

    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    await shutdown_chat_runtime()


app.include_router(threads_router)
app.include_router(chat_router)


@app.get("/")
async def root():
    return {"message": "Pro Chat backend"}
