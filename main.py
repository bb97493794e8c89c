import asyncio
import os
import logging

from dotenv import load_dotenv

# Load environment variables before importing internal modules
load_dotenv()

from charts import ChartService
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("zabbix_graphs")

GET_GRAPH = "GET_GRAPH"
GRAPH_RESULT = "GRAPH_RESULT"

app = FastAPI()
app.state.service = ChartService()


def get_service() -> ChartService:
    return app.state.service


@app.get("/healthz")
def health():
    return {"status": "ok"}


@app.post("/graph")
async def graph(req: Request):
    """Resolve and render the graph described by the request body."""
    try:
        payload = await req.json()
    except ValueError:
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)
    result = await get_service().handle_request(payload)
    return JSONResponse(result)


@app.websocket("/ws")
async def notifications(ws: WebSocket):
    """``GET_GRAPH`` in, ``GRAPH_RESULT`` out; each request runs as its own task."""
    await ws.accept()
    send_lock = asyncio.Lock()
    tasks: set[asyncio.Task] = set()

    async def serve(config: dict) -> None:
        result = await get_service().handle_request(config)
        async with send_lock:
            await ws.send_json({"notification": GRAPH_RESULT, "payload": result})

    try:
        while True:
            try:
                message = await ws.receive_json()
            except ValueError:
                logger.warning("dropping malformed notification frame")
                continue
            if not isinstance(message, dict) or message.get("notification") != GET_GRAPH:
                logger.debug("ignoring notification %r", message)
                continue
            payload = message.get("payload")
            task = asyncio.create_task(serve(payload if isinstance(payload, dict) else {}))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
    except WebSocketDisconnect:
        logger.info("notification channel closed")
    finally:
        for task in tasks:
            task.cancel()


def main():
    import uvicorn

    logger.info("serving Zabbix graphs on %s:%s", API_HOST, API_PORT)
    uvicorn.run(app, host=API_HOST, port=API_PORT, loop="asyncio")


if __name__ == "__main__":
    main()
