from __future__ import annotations

import asyncio
import logging
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from run_api import db as dbm
from run_api.auth import ApiKeyVerifier, IdentityVerifier, UserIdentity, hash_token, require_admin, require_user
from run_api.dispatcher import DispatchError, ScriptTooLarge, SubmissionDispatcher
from run_api.launcher import TaskLauncher, get_launcher
from run_api.retrieval import RetrievalService, RunNotFound
from run_api.schema import CreateApiKeyRequest, CreateUserRequest, ScriptRequest
from run_api.settings import ApiSettings
from run_store import ArtifactStore, open_store


LOGGER = logging.getLogger("run-api")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    settings: ApiSettings | None = None,
    *,
    store: ArtifactStore | None = None,
    launcher: TaskLauncher | None = None,
    verifier: IdentityVerifier | None = None,
) -> FastAPI:
    app = FastAPI(title="Script Runs API", version="0.1.0")
    settings = settings or ApiSettings()
    app.state.settings = settings
    app.state.store = store if store is not None else open_store(settings.artifacts_dir, settings.bucket)
    app.state.launcher = launcher if launcher is not None else get_launcher(settings)
    app.state.verifier = verifier if verifier is not None else ApiKeyVerifier(settings)
    app.state.dispatcher = SubmissionDispatcher(
        app.state.launcher, bucket=settings.bucket, max_script_bytes=settings.max_script_bytes
    )
    app.state.retrieval = RetrievalService(app.state.store)

    # Preflight requests are answered here, before any auth dependency runs.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.on_event("startup")
    def _startup() -> None:
        dbm.ensure_schema(app.state.settings)
        # Ensure storage locations exist (single-host deployment).
        try:
            Path(app.state.settings.artifacts_dir).mkdir(parents=True, exist_ok=True)
        except OSError:
            LOGGER.warning("Could not create artifacts dir path=%s", app.state.settings.artifacts_dir)
        LOGGER.info(
            "Run API ready launcher=%s bucket=%s",
            getattr(app.state.launcher, "name", type(app.state.launcher).__name__),
            app.state.settings.bucket,
        )

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "ts": time.time()}

    # -----------------
    # Admin
    # -----------------

    @app.post("/api/v1/admin/users")
    async def api_create_user(_auth: None = Depends(require_admin), req: CreateUserRequest | None = None) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        user = await asyncio.to_thread(dbm.create_user, app.state.settings, name=req.name)
        return {"ok": True, "user": user}

    @app.post("/api/v1/admin/api_keys")
    async def api_create_api_key(_auth: None = Depends(require_admin), req: CreateApiKeyRequest | None = None) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        user = await asyncio.to_thread(dbm.get_user, app.state.settings, user_id=req.user_id)
        if not user:
            raise HTTPException(status_code=404, detail="user_not_found")
        token = secrets.token_urlsafe(32)
        th = hash_token(token)
        rec = await asyncio.to_thread(
            dbm.create_api_key,
            app.state.settings,
            user_id=req.user_id,
            name=req.name,
            token_hash=th,
        )
        # The plaintext token is only ever returned here.
        return {"ok": True, "api_key": rec, "token": token}

    @app.post("/api/v1/admin/api_keys/{api_key_id}/revoke")
    async def api_revoke_api_key(api_key_id: str, _auth: None = Depends(require_admin)) -> dict[str, Any]:
        ok = await asyncio.to_thread(dbm.revoke_api_key, app.state.settings, api_key_id=api_key_id)
        if not ok:
            raise HTTPException(status_code=404, detail="not_found")
        LOGGER.info("API key revoked api_key_id=%s", api_key_id)
        return {"ok": True}

    # -----------------
    # Scripts
    # -----------------

    def _check_script_size(code: str) -> None:
        # Same cap as at run time: a stored script that could never be launched is refused up front.
        if len(code.encode("utf-8")) > app.state.dispatcher.max_script_bytes:
            raise HTTPException(status_code=413, detail="script_too_large")

    @app.get("/scripts")
    async def api_list_scripts(identity: UserIdentity = Depends(require_user)) -> dict[str, Any]:
        scripts = await asyncio.to_thread(dbm.list_scripts, app.state.settings, user_id=identity.user_id)
        return {"ok": True, "scripts": scripts}

    @app.post("/scripts")
    async def api_create_script(identity: UserIdentity = Depends(require_user), req: ScriptRequest | None = None) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        _check_script_size(req.code)
        script = await asyncio.to_thread(
            dbm.insert_script,
            app.state.settings,
            user_id=identity.user_id,
            name=req.name,
            code=req.code,
        )
        return {"ok": True, "script": script}

    @app.put("/scripts/{script_id}")
    async def api_update_script(
        script_id: str,
        identity: UserIdentity = Depends(require_user),
        req: ScriptRequest | None = None,
    ) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        _check_script_size(req.code)
        script = await asyncio.to_thread(
            dbm.update_script,
            app.state.settings,
            user_id=identity.user_id,
            script_id=script_id,
            name=req.name,
            code=req.code,
        )
        if not script:
            raise HTTPException(status_code=404, detail="not_found")
        return {"ok": True, "script": script}

    @app.delete("/scripts/{script_id}")
    async def api_delete_script(script_id: str, identity: UserIdentity = Depends(require_user)) -> dict[str, Any]:
        ok = await asyncio.to_thread(dbm.delete_script, app.state.settings, user_id=identity.user_id, script_id=script_id)
        if not ok:
            raise HTTPException(status_code=404, detail="not_found")
        return {"success": True}

    # -----------------
    # Runs
    # -----------------

    @app.post("/run/{script_id}", status_code=202)
    async def api_run_script(script_id: str, identity: UserIdentity = Depends(require_user)) -> Any:
        script = await asyncio.to_thread(
            dbm.get_script, app.state.settings, user_id=identity.user_id, script_id=script_id
        )
        if not script:
            return _error(404, "Script not found")
        try:
            submission = await app.state.dispatcher.submit(str(script["code"]))
        except ScriptTooLarge:
            return _error(413, "Script too large")
        except DispatchError:
            return _error(500, "Failed to start task")
        LOGGER.info("Run submitted user_id=%s script_id=%s output_key=%s", identity.user_id, script_id, submission.output_key)
        return {"status": submission.status, "outputKey": submission.output_key}

    # Registered before the plain results route: both use a path converter.
    @app.get("/results/{output_key:path}/screenshot")
    async def api_get_screenshot(output_key: str, _identity: UserIdentity = Depends(require_user)) -> Response:
        try:
            png = await asyncio.to_thread(app.state.retrieval.fetch_snapshot, output_key)
        except RunNotFound:
            return _error(404, "not found")
        return Response(content=png, media_type="image/png")

    @app.get("/results/{output_key:path}")
    async def api_get_results(output_key: str, _identity: UserIdentity = Depends(require_user)) -> Any:
        try:
            result = await asyncio.to_thread(app.state.retrieval.fetch, output_key)
        except RunNotFound:
            return _error(404, "not found")
        return {"data": result.data, "logs": result.logs}

    return app
