import logging

from fastapi import FastAPI

from control_plane.api.routes.deployments import router as deployments_router
from control_plane.api.routes.queue import router as queue_router
from control_plane.api.routes.webhooks import router as webhooks_router

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

app = FastAPI(title="Control Plane API")


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(webhooks_router)
app.include_router(deployments_router)
app.include_router(queue_router)
