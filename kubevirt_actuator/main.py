import logging
import threading

from fastapi import FastAPI

from kubevirt_actuator.api import router
from kubevirt_actuator.config import get_settings
from kubevirt_actuator.db import engine
from kubevirt_actuator.logging_config import configure_logging
from kubevirt_actuator.loops import start_loops
from kubevirt_actuator.models import Base


logger = logging.getLogger(__name__)
stop_event = threading.Event()
loop_threads: list[threading.Thread] = []


app = FastAPI(title="KubeVirt Machine Actuator")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    Base.metadata.create_all(bind=engine)

    if not settings.disable_background_loops:
        global loop_threads
        loop_threads = start_loops(stop_event)
    logger.info(
        "actuator startup complete infra_api_url=%s tenant_api_url=%s watch_namespace=%s",
        settings.infra_api_url,
        settings.tenant_api_url,
        settings.watch_namespace or "*",
    )


@app.on_event("shutdown")
def shutdown() -> None:
    stop_event.set()
    for thread in loop_threads:
        thread.join(timeout=1)
