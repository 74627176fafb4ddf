from __future__ import annotations

import dataclasses
from typing import Any

from fastapi import FastAPI, HTTPException

from . import db
from .api_models import AttributeRequest, InstallRequest, PhaseRequest, UpgradeConfigRequest
from .db import Store
from .errors import InvalidRangeError, InvalidTransitionError, PolicyCompileError, RegistryError, UpgradeError
from .exchange import ExchangeClient
from .models import Attribute
from .policy import PendingPolicySink, PolicyFileWriter, QueuePolicySink, compile_policy
from .reconciler import UpgradeReconciler
from .settings import settings
from .upgrade import convert_to_persistent
from .versions import VersionRange


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, KeyError):
        return HTTPException(status_code=404, detail=f"unknown microservice {e.args[0] if e.args else ''}")
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (InvalidRangeError, PolicyCompileError)):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, RegistryError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=f"{type(e).__name__}: {e}")


def create_app(
    store: Store | None = None,
    reconciler: UpgradeReconciler | None = None,
    start_reconciler: bool | None = None,
) -> FastAPI:
    store = store or Store()
    if reconciler is None:
        sink = QueuePolicySink()
        reconciler = UpgradeReconciler(
            store=store,
            registry=ExchangeClient(store=store),
            sink=sink,
            writer=PolicyFileWriter(sink, store=store),
        )
    if start_reconciler is None:
        start_reconciler = settings.enable_reconciler

    app = FastAPI(title="Microservice Upgrade Lifecycle")
    app.state.store = store
    app.state.reconciler = reconciler

    @app.on_event("startup")
    def startup() -> None:
        store.init_db()
        if start_reconciler:
            reconciler.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        reconciler.stop()

    def _get(msdef_id: str):
        msdef = store.get_definition(msdef_id)
        if msdef is None:
            raise HTTPException(status_code=404, detail=f"unknown microservice {msdef_id}")
        return msdef

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/microservices")
    def list_microservices(archived: bool | None = None) -> list[dict[str, Any]]:
        filters = [] if archived is None else [db.archived() if archived else db.unarchived()]
        return [d.to_dict() for d in store.find_definitions(filters)]

    @app.post("/microservices", status_code=201)
    def install_microservice(req: InstallRequest) -> dict[str, Any]:
        pending = PendingPolicySink()
        try:
            vrange = VersionRange.parse(req.upgrade_version_range)
            ems = reconciler.registry.get_highest_matching_version(req.spec_ref, req.org, vrange.expression, req.arch)
            msdef = convert_to_persistent(ems, req.org)
            msdef.name = req.name
            msdef.upgrade_version_range = req.upgrade_version_range
            msdef.auto_upgrade = req.auto_upgrade
            msdef.active_upgrade = req.active_upgrade
            with reconciler.runtime.lock_for(msdef.key), store.transaction():
                existing = store.find_definitions([db.unarchived(), db.by_key(msdef.key)])
                if existing:
                    raise HTTPException(
                        status_code=409,
                        detail=f"{msdef.spec_ref} for {msdef.org}/{msdef.arch} is already installed as {existing[0].id}",
                    )
                store.put_definition(msdef)
                compile_policy(msdef, store, pending)
        except UpgradeError as e:
            raise _http_error(e) from e
        pending.flush(reconciler.sink)
        store.log_event("INFO", "Microservice installed", spec_ref=msdef.spec_ref, version=msdef.version)
        return msdef.to_dict()

    @app.get("/microservices/{msdef_id}")
    def get_microservice(msdef_id: str) -> dict[str, Any]:
        return _get(msdef_id).to_dict()

    @app.put("/microservices/{msdef_id}/upgrade-config")
    def set_upgrade_config(msdef_id: str, req: UpgradeConfigRequest) -> dict[str, Any]:
        msdef = _get(msdef_id)
        changes = req.model_dump(exclude_none=True)
        if "upgrade_version_range" in changes:
            try:
                VersionRange.parse(changes["upgrade_version_range"])
            except InvalidRangeError as e:
                raise _http_error(e) from e
        msdef = dataclasses.replace(msdef, **changes)
        store.put_definition(msdef)
        store.log_event("INFO", f"Upgrade configuration changed: {changes}", spec_ref=msdef.spec_ref, version=msdef.version)
        return msdef.to_dict()

    @app.post("/microservices/{msdef_id}/phase")
    def record_phase(msdef_id: str, req: PhaseRequest) -> dict[str, Any]:
        try:
            return reconciler.record_phase(msdef_id, req.state, reason=req.reason, description=req.description).to_dict()
        except (KeyError, UpgradeError) as e:
            raise _http_error(e) from e

    @app.post("/microservices/{msdef_id}/unregister")
    def unregister(msdef_id: str) -> dict[str, Any]:
        try:
            return reconciler.unregister_from_exchange(msdef_id).to_dict()
        except (KeyError, UpgradeError) as e:
            raise _http_error(e) from e

    @app.post("/microservices/{msdef_id}/rollback")
    def rollback(msdef_id: str) -> dict[str, Any]:
        try:
            restored = reconciler.rollback(msdef_id, description="Rolled back on request")
        except (KeyError, UpgradeError) as e:
            raise _http_error(e) from e
        return {"rolled_back": msdef_id, "restored": restored.to_dict() if restored else None}

    @app.post("/reconcile")
    def reconcile() -> dict[str, Any]:
        reconciler.tick()
        return {"upgrades": [dataclasses.asdict(u) for u in reconciler.runtime.list_upgrades()]}

    @app.get("/upgrades")
    def list_upgrades() -> list[dict[str, Any]]:
        return [dataclasses.asdict(u) for u in reconciler.runtime.list_upgrades()]

    @app.post("/attributes", status_code=201)
    def add_attribute(req: AttributeRequest) -> dict[str, Any]:
        attr = store.put_attribute(Attribute(kind=req.kind, values=req.values, service_urls=req.service_urls, label=req.label))
        return dataclasses.asdict(attr)

    @app.get("/attributes")
    def list_attributes(spec_ref: str) -> list[dict[str, Any]]:
        return [dataclasses.asdict(a) for a in store.find_applicable_attributes(spec_ref)]

    @app.get("/events")
    def events(limit: int = 100) -> list[dict[str, Any]]:
        return store.latest_events(limit=max(1, min(1000, limit)))

    return app
