"""HTTP server mode for pipeline runs.

Exposes :class:`PipelineService` as a small JSON API for submitting
runs, inspecting them, and steering gates.  Uses only the standard
library (``asyncio``, ``http``, ``json``, ``urllib.parse``).

Routes::

    POST /pipelines                         submit {definition|dot|pipeline, records?}
    POST /validate                          validate {definition|dot}
    GET  /runs[?status=PAUSED]              list runs
    GET  /runs/{id}                         run status
    GET  /runs/{id}/errors                  record errors
    GET  /runs/{id}/events                  collected events
    GET  /runs/{id}/gates                   pending gates
    POST /runs/{id}/cancel                  cancel
    POST /runs/{id}/gates/{step}/approve    approve a gate
    POST /runs/{id}/gates/{step}/reject     reject a gate
    POST /runs/{id}/steps/{step}/replay    replay {records?} from a step
"""

from __future__ import annotations

import asyncio
import json
import logging
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, unquote, urlsplit

from datahub.pipeline.errors import DefinitionError, EngineError, GateNotFoundError, RunNotFoundError
from datahub.pipeline.models import Pipeline, RunStatus
from datahub.pipeline.parser import parse_definition, parse_dot_string
from datahub.pipeline.service import PipelineService
from datahub.pipeline.validator import ValidationLevel

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0

Response = tuple[HTTPStatus, dict[str, Any]]


class BadRequest(Exception):
    """Request body could not be used."""


class PipelineServer:
    """Async HTTP server wrapping :class:`PipelineService`.

    Args:
        service: The service that owns runs; a default one is created
            when omitted.
        host: Bind address (default ``"127.0.0.1"``).
        port: Bind port (default ``8080``; ``0`` picks a free port).
    """

    def __init__(
        self,
        service: PipelineService | None = None,
        host: str = "127.0.0.1",
        port: int = 8080,
    ) -> None:
        self.service = service or PipelineService()
        self._host = host
        self._port = port
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        """The bound port, once started."""
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    async def start(self) -> None:
        """Start listening and start the service's background sweep."""
        self._server = await asyncio.start_server(
            self._handle_connection, self._host, self._port
        )
        self.service.start()
        logger.info("Pipeline server listening on %s:%d", self._host, self.port)

    async def stop(self) -> None:
        """Stop listening and shut the service down."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self.service.close()

    async def serve_forever(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    # -- transport ----------------------------------------------------------

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            request_line, _headers, body = await self._read_request(reader)
            if request_line is None:
                return
            method, target, _ = request_line.split(" ", 2)
            status, payload = await self._route(method, target, body)
            await self._send_response(writer, status, payload)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug("Client connection dropped: %s", exc)
        except Exception:
            logger.exception("Unhandled error while serving request")
            await self._send_response(
                writer, HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "Internal server error"}
            )
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError as exc:
                logger.debug("Error closing connection: %s", exc)

    async def _read_request(
        self, reader: asyncio.StreamReader
    ) -> tuple[str | None, dict[str, str], str]:
        """Parse an HTTP request from the stream.

        Returns:
            Tuple of (request_line, headers, body). ``request_line`` is
            ``None`` if the client sent nothing.
        """
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=REQUEST_TIMEOUT)
        except asyncio.TimeoutError:
            return None, {}, ""
        request_line = line.decode("utf-8").strip()
        if not request_line:
            return None, {}, ""

        headers: dict[str, str] = {}
        while True:
            header = (await reader.readline()).decode("utf-8").strip()
            if not header:
                break
            if ":" in header:
                key, value = header.split(":", 1)
                headers[key.strip().lower()] = value.strip()

        body = ""
        length = int(headers.get("content-length", "0") or 0)
        if length > 0:
            body = (await reader.readexactly(length)).decode("utf-8")
        return request_line, headers, body

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        payload: dict[str, Any],
    ) -> None:
        body = json.dumps(payload, default=str)
        response = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(body.encode('utf-8'))}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
            f"{body}"
        )
        writer.write(response.encode("utf-8"))
        await writer.drain()

    # -- routing ------------------------------------------------------------

    async def _route(self, method: str, target: str, body: str) -> Response:
        url = urlsplit(target)
        parts = [unquote(p) for p in url.path.strip("/").split("/") if p]
        query = parse_qs(url.query)

        try:
            if method == "POST" and parts == ["pipelines"]:
                return await self._handle_submit(body)
            if method == "POST" and parts == ["validate"]:
                return self._handle_validate(body)
            if method == "GET" and parts == ["runs"]:
                return self._handle_list(query)
            if len(parts) >= 2 and parts[0] == "runs":
                return await self._route_run(method, parts[1], parts[2:], body)
        except BadRequest as exc:
            return HTTPStatus.BAD_REQUEST, {"error": str(exc)}
        except (RunNotFoundError, GateNotFoundError) as exc:
            return HTTPStatus.NOT_FOUND, {"error": str(exc)}
        except EngineError as exc:
            return HTTPStatus.CONFLICT, {"error": str(exc)}

        return HTTPStatus.NOT_FOUND, {"error": f"Not found: {method} {url.path}"}

    async def _route_run(
        self, method: str, run_id: str, rest: list[str], body: str = ""
    ) -> Response:
        if method == "GET":
            if not rest:
                return HTTPStatus.OK, self.service.get_run(run_id).to_dict()
            if rest == ["errors"]:
                run = self.service.get_run(run_id)
                return HTTPStatus.OK, {"id": run_id, "errors": [e.to_dict() for e in run.errors]}
            if rest == ["events"]:
                return HTTPStatus.OK, {"id": run_id, "events": self.service.events_for(run_id)}
            if rest == ["gates"]:
                gates = await self.service.pending_gates(run_id)
                return HTTPStatus.OK, {
                    "id": run_id,
                    "gates": [
                        {k: v for k, v in snapshot.items() if k != "pendingRecords"}
                        for snapshot in gates.values()
                    ],
                }
        if method == "POST":
            if rest == ["cancel"]:
                run = await self.service.cancel_run(run_id)
                return HTTPStatus.OK, {"id": run_id, "status": run.status.value}
            if len(rest) == 3 and rest[0] == "gates" and rest[2] == "approve":
                run = await self.service.approve_gate(run_id, rest[1])
                return HTTPStatus.OK, {"id": run_id, "status": run.status.value}
            if len(rest) == 3 and rest[0] == "gates" and rest[2] == "reject":
                run = await self.service.reject_gate(run_id, rest[1])
                return HTTPStatus.OK, {"id": run_id, "status": run.status.value}
            if len(rest) == 3 and rest[0] == "steps" and rest[2] == "replay":
                return await self._handle_replay(run_id, rest[1], body)
        return HTTPStatus.NOT_FOUND, {"error": f"Not found: {method} /runs/{run_id}/{'/'.join(rest)}"}

    # -- handlers -----------------------------------------------------------

    def _load_body(self, body: str) -> dict[str, Any]:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, TypeError):
            raise BadRequest("Invalid JSON body") from None
        if not isinstance(data, dict):
            raise BadRequest("Body must be a JSON object")
        return data

    def _pipeline_from(self, data: dict[str, Any]) -> Pipeline:
        """Build the pipeline named by a request body.

        Raises:
            BadRequest: If the body names no usable pipeline.
            DefinitionError: If the definition does not parse.
        """
        if isinstance(data.get("dot"), str):
            return parse_dot_string(data["dot"])
        if isinstance(data.get("definition"), dict):
            return parse_definition(data["definition"])
        if isinstance(data.get("pipeline"), str):
            pipeline = self.service.get_pipeline(data["pipeline"])
            if pipeline is None:
                raise BadRequest(f"Pipeline '{data['pipeline']}' is not registered")
            return pipeline
        raise BadRequest("Body needs 'definition', 'dot' or 'pipeline'")

    async def _handle_submit(self, body: str) -> Response:
        data = self._load_body(body)
        try:
            pipeline = self._pipeline_from(data)
        except DefinitionError as exc:
            return HTTPStatus.BAD_REQUEST, {"error": f"Parse error: {exc}"}

        records = data.get("records", [])
        if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
            raise BadRequest("'records' must be a list of objects")

        findings = self.service.validate(pipeline)
        failures = [str(f) for f in findings if f.level == ValidationLevel.ERROR]
        if failures:
            return HTTPStatus.BAD_REQUEST, {
                "error": "Pipeline validation failed",
                "details": failures,
            }

        run = await self.service.start_run(pipeline, records)
        return HTTPStatus.ACCEPTED, {"id": run.id, "status": run.status.value}

    async def _handle_replay(self, run_id: str, step_key: str, body: str) -> Response:
        records = None
        if body.strip():
            records = self._load_body(body).get("records")
            if records is not None and (
                not isinstance(records, list) or not all(isinstance(r, dict) for r in records)
            ):
                raise BadRequest("'records' must be a list of objects")
        replay = await self.service.replay_from_step(run_id, step_key, records)
        return HTTPStatus.ACCEPTED, {
            "id": replay.id,
            "status": replay.status.value,
            "replayOf": run_id,
        }

    def _handle_validate(self, body: str) -> Response:
        data = self._load_body(body)
        try:
            pipeline = self._pipeline_from(data)
        except DefinitionError as exc:
            return HTTPStatus.OK, {
                "valid": False,
                "errors": [f"Parse error: {exc}"],
                "warnings": [],
            }

        findings = self.service.validate(pipeline)
        errors = [str(f) for f in findings if f.level == ValidationLevel.ERROR]
        warnings = [str(f) for f in findings if f.level == ValidationLevel.WARNING]
        return HTTPStatus.OK, {
            "valid": not errors,
            "pipeline": pipeline.name,
            "errors": errors,
            "warnings": warnings,
        }

    def _handle_list(self, query: dict[str, list[str]]) -> Response:
        status: RunStatus | None = None
        if "status" in query:
            raw = query["status"][0]
            try:
                status = RunStatus(raw.upper())
            except ValueError:
                raise BadRequest(f"Unknown run status '{raw}'") from None
        runs = self.service.list_runs(status)
        return HTTPStatus.OK, {"runs": [r.to_dict() for r in runs]}
