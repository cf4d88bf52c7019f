"""
HTTP file server for broadcast files.

Serves every file in one directory at ``/<file name>``. Runs a FastAPI
app on uvicorn in a daemon thread so the calling thread never blocks.
"""

import logging
import socket
import threading
import time
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from ..auth.security import SecurityManager
from ..errors import InitializationError

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 10.0
SHUTDOWN_TIMEOUT = 5.0


class HealthResponse(BaseModel):
    """Response from the health endpoint."""
    status: str = "ok"
    name: str
    files: int = Field(0, description="Broadcast files currently served")
    authenticated: bool = False


def create_app(directory: Path, security: SecurityManager, name: str = "HTTP broadcast server") -> FastAPI:
    """Create the FastAPI app serving files from ``directory``."""
    directory = Path(directory)
    app = FastAPI(title=name, docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            name=name,
            files=sum(1 for p in directory.iterdir() if p.is_file()),
            authenticated=security.is_authentication_enabled(),
        )

    @app.get("/{file_name}")
    async def get_file(file_name: str, request: Request, token: Optional[str] = None):
        ok, error = security.verify(request.url.path, token)
        if not ok:
            logger.warning(f"Rejected fetch of {file_name}: {error}")
            raise HTTPException(status_code=401 if token is None else 403, detail=error)

        if file_name.startswith(".") or "/" in file_name or "\\" in file_name:
            raise HTTPException(status_code=400, detail="Invalid file name")

        path = directory / file_name
        if not path.is_file():
            raise HTTPException(status_code=404, detail=f"{file_name} not found")

        logger.debug(f"Serving {path}")
        return FileResponse(path, media_type="application/octet-stream")

    return app


class HttpFileServer:
    """
    Threaded uvicorn server bound to a pre-opened socket.

    Binding the socket ourselves lets port 0 pick an ephemeral port
    whose number is known before the first request.

    Usage:
        server = HttpFileServer(Path("/tmp/broadcast-x"), SecurityManager(), port=0)
        uri = server.start()   # e.g. "http://127.0.0.1:53817"
        ...
        server.stop()
    """

    def __init__(
        self,
        directory: Path,
        security: SecurityManager,
        host: str = "127.0.0.1",
        port: int = 0,
        name: str = "HTTP broadcast server",
        advertise_host: Optional[str] = None,
    ):
        self.directory = Path(directory)
        self.security = security
        self.host = host
        self.port = port
        self.name = name
        self.advertise_host = advertise_host

        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._uri: Optional[str] = None

    @property
    def uri(self) -> Optional[str]:
        return self._uri

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            raise InitializationError(
                f"{self.name} could not bind {self.host}:{self.port}: {e}"
            ) from e
        return sock

    def start(self) -> str:
        """Start serving and return the base URI."""
        if self.running:
            return self._uri

        self._socket = self._bind()
        bound_port = self._socket.getsockname()[1]

        config = uvicorn.Config(
            create_app(self.directory, self.security, self.name),
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [self._socket]},
            name=f"relaycast-http-{bound_port}",
            daemon=True,
        )
        self._thread.start()

        deadline = time.monotonic() + STARTUP_TIMEOUT
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                self.stop()
                raise InitializationError(f"{self.name} failed to start on port {bound_port}")
            time.sleep(0.01)

        host = self.advertise_host or self.host
        if host in ("0.0.0.0", ""):
            host = socket.gethostname()
        self._uri = f"http://{host}:{bound_port}"

        logger.info(f"{self.name} started at {self._uri} serving {self.directory}")
        return self._uri

    def stop(self) -> None:
        """Stop serving. Safe to call repeatedly."""
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=SHUTDOWN_TIMEOUT)
            if self._thread.is_alive():
                logger.warning(f"{self.name} did not shut down within {SHUTDOWN_TIMEOUT}s")
        if self._socket is not None:
            self._socket.close()
            if self._uri:
                logger.info(f"{self.name} stopped ({self._uri})")

        self._socket = None
        self._server = None
        self._thread = None
        self._uri = None
