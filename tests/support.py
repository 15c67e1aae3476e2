# tests/support.py
import asyncio
import socket
import threading
import time
from contextlib import closing, contextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, StreamingResponse

CHUNK = 64 * 1024

# --- helpers ---------------------------------------------------------------

def free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]

def payload_bytes(size: int) -> bytes:
    """Deterministic, non-repeating-per-256 body of exactly ``size`` bytes."""
    return (bytes(range(256)) * (size // 256 + 1))[:size]

class BgServer:
    """Run a uvicorn server in a background thread; stop with should_exit=True."""
    def __init__(self, app, host: str, port: int):
        self.config = uvicorn.Config(app, host=host, port=port, log_level="error", timeout_graceful_shutdown=1)
        self.server = uvicorn.Server(self.config)
        self.thread = threading.Thread(target=self.server.run, daemon=True)

    @property
    def url(self) -> str:
        return f"http://{self.config.host}:{self.config.port}"

    def start(self):
        self.thread.start()
        # Wait until port is accepting connections
        deadline = time.time() + 5
        while time.time() < deadline:
            try:
                with socket.create_connection((self.config.host, self.config.port), timeout=0.25):
                    return
            except OSError:
                time.sleep(0.05)
        raise RuntimeError("Server failed to start")

    def stop(self):
        self.server.should_exit = True
        self.thread.join(timeout=3)

@contextmanager
def silent_backend():
    """A listener whose backlog accepts connections but that never answers."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(64)
        yield f"http://127.0.0.1:{s.getsockname()[1]}"

# --- mock backends ---------------------------------------------------------

def make_backend_app(name: str) -> FastAPI:
    app = FastAPI()

    @app.api_route("/echo", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def echo(request: Request):
        body = await request.body()
        return {
            "backend": name,
            "method": request.method,
            "path": request.url.path,
            "query": request.url.query,
            "body": body.decode(),
            "headers": [[k, v] for k, v in request.headers.items()],
        }

    @app.get("/payload")
    async def payload(size: int = 10):
        body = payload_bytes(size)

        async def chunks():
            for i in range(0, len(body), CHUNK):
                yield body[i:i + CHUNK]

        resp = StreamingResponse(chunks(), status_code=201, media_type="application/octet-stream")
        resp.headers.append("X-Custom", "a")
        resp.headers.append("X-Custom", "b")
        return resp

    @app.get("/slow")
    async def slow(delay: float = 0.5):
        await asyncio.sleep(delay)
        return {"backend": name, "slept": delay}

    @app.get("/status/{code}")
    async def status(code: int):
        return PlainTextResponse(f"{name} answered {code}", status_code=code)

    return app
