from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from logging_config import configure_logging

from . import crud, schemas
from .aggregator import ResultAggregator
from .config import EngineConfig, load_config
from .controller import InMemoryNotificationRegistry, TaskController
from .coordinator import ClientProvider, MultiClusterCoordinator
from .database import create_session_factory, ensure_runtime_directories
from .kube import ClusterClientFactory
from .models import InspectResultRecord, InspectRuleRecord, InspectTaskRecord

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: EngineConfig
    session_factory: Callable[[], Session]
    clients: ClientProvider
    aggregator: ResultAggregator
    controller: TaskController


def build_runtime(
    config: EngineConfig,
    session_factory: Optional[Callable[[], Session]] = None,
    clients: Optional[ClientProvider] = None,
) -> Runtime:
    if session_factory is None:
        session_factory = create_session_factory(config.database_url)
    clients = clients or ClusterClientFactory(
        home_kubeconfig=config.kubeconfig,
        kubeconfigs=config.clusters,
        namespace=config.namespace,
    )
    aggregator = ResultAggregator(session_factory, config.result_root)
    coordinator = MultiClusterCoordinator(clients, aggregator, config)
    controller = TaskController(
        session_factory,
        coordinator,
        aggregator,
        clients,
        InMemoryNotificationRegistry(),
        default_timeout=config.default_timeout,
    )
    return Runtime(
        config=config,
        session_factory=session_factory,
        clients=clients,
        aggregator=aggregator,
        controller=controller,
    )


_RUNTIME_LOCK = threading.Lock()
_RUNTIME: Optional[Runtime] = None

_RECONCILE_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="reconcile")
_RECONCILE_LOCK = threading.Lock()
_ACTIVE_RECONCILES: Dict[str, Future] = {}

_LOOP_STOP = threading.Event()
_LOOP_THREAD: Optional[threading.Thread] = None


def configure_runtime(runtime: Optional[Runtime]) -> None:
    global _RUNTIME
    with _RUNTIME_LOCK:
        _RUNTIME = runtime


def get_runtime() -> Runtime:
    with _RUNTIME_LOCK:
        runtime = _RUNTIME
    if runtime is None:
        raise HTTPException(status_code=503, detail="巡检引擎尚未初始化。")
    return runtime


def get_db(runtime: Runtime = Depends(get_runtime)):
    db = runtime.session_factory()
    try:
        yield db
    finally:
        db.close()


def _submit_reconcile(runtime: Runtime, name: str) -> Future:
    """Schedule one reconcile pass; a pass already queued for the task is reused."""
    with _RECONCILE_LOCK:
        existing = _ACTIVE_RECONCILES.get(name)
        if existing is not None and not existing.done():
            return existing
        future = _RECONCILE_EXECUTOR.submit(runtime.controller.reconcile, name)
        _ACTIVE_RECONCILES[name] = future

    def _cleanup(fut: Future) -> None:
        with _RECONCILE_LOCK:
            if _ACTIVE_RECONCILES.get(name) is fut:
                _ACTIVE_RECONCILES.pop(name, None)
        exc = fut.exception()
        if exc is not None:
            logger.error("Reconcile of inspect task %s failed: %s", name, exc)
        else:
            logger.debug("Reconcile of inspect task %s finished with %s.", name, fut.result())

    future.add_done_callback(_cleanup)
    return future


def _reconcile_loop(interval: float) -> None:
    logger.info("Reconcile loop started, interval %s seconds.", interval)
    while not _LOOP_STOP.wait(max(1.0, interval)):
        runtime = _RUNTIME
        if runtime is None:
            continue
        try:
            db = runtime.session_factory()
            try:
                names = [record.name for record in crud.list_active_tasks(db)]
            finally:
                db.close()
            for name in names:
                _submit_reconcile(runtime, name)
        except Exception:
            logger.exception("Reconcile loop iteration failed.")


def start_reconcile_loop(interval: float) -> None:
    global _LOOP_THREAD
    if _LOOP_THREAD is not None and _LOOP_THREAD.is_alive():
        return
    _LOOP_STOP.clear()
    _LOOP_THREAD = threading.Thread(
        target=_reconcile_loop, args=(interval,), name="reconcile-loop", daemon=True
    )
    _LOOP_THREAD.start()


def stop_reconcile_loop() -> None:
    _LOOP_STOP.set()


app = FastAPI(title="K8s Inspection Engine", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    with _RUNTIME_LOCK:
        runtime = _RUNTIME
    if runtime is not None:
        ensure_runtime_directories(runtime.config.result_root)
        return
    config = load_config()
    configure_logging(config.log_level, config.log_timezone)
    ensure_runtime_directories(config.result_root)
    configure_runtime(build_runtime(config))
    start_reconcile_loop(config.reconcile_interval)
    logger.info("Inspection engine ready (namespace %s).", config.namespace)


@app.on_event("shutdown")
def on_shutdown() -> None:
    stop_reconcile_loop()


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


def _present_rule(record: InspectRuleRecord) -> schemas.RuleOut:
    return schemas.RuleOut(
        name=record.name,
        rule_group=record.rule_group,
        spec=record.spec,
        updated_at=record.updated_at,
    )


def _present_task(record: InspectTaskRecord) -> schemas.TaskOut:
    task = crud.to_task(record)
    return schemas.TaskOut(
        name=task.name,
        rule_group=task.rule_group,
        spec=task.spec,
        status=task.status,
        creation_timestamp=task.creation_timestamp,
        deletion_timestamp=task.deletion_timestamp,
        finalizers=task.finalizers,
    )


@app.post("/rules", response_model=schemas.RuleOut, status_code=201)
def upsert_rule(rule_in: schemas.Rule, db: Session = Depends(get_db)):
    record = crud.upsert_rule(db, rule_in)
    return _present_rule(record)


@app.get("/rules", response_model=List[schemas.RuleOut])
def list_rules(rule_group: Optional[str] = None, db: Session = Depends(get_db)):
    return [_present_rule(record) for record in crud.list_rules(db, rule_group=rule_group)]


@app.post("/tasks", response_model=schemas.TaskOut, status_code=201)
def create_task(
    task_in: schemas.TaskCreate,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    if not task_in.spec.rule_names:
        raise HTTPException(status_code=400, detail="巡检任务至少需要一条规则。")
    if crud.get_task(db, task_in.name):
        raise HTTPException(status_code=409, detail="同名巡检任务已存在。")
    try:
        record = crud.create_task(
            db, name=task_in.name, spec=task_in.spec, rule_group=task_in.rule_group
        )
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="同名巡检任务已存在。")
    logger.info("Inspect task %s created.", record.name)
    return _present_task(record)


@app.get("/tasks/{name}", response_model=schemas.TaskOut)
def get_task(name: str, db: Session = Depends(get_db)):
    record = crud.get_task(db, name)
    if not record:
        raise HTTPException(status_code=404, detail="指定的巡检任务不存在。")
    return _present_task(record)


@app.post("/tasks/{name}/reconcile", status_code=202)
def reconcile_task(
    name: str,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    if not crud.get_task(db, name):
        raise HTTPException(status_code=404, detail="指定的巡检任务不存在。")
    _submit_reconcile(runtime, name)
    return {"name": name, "scheduled": True}


@app.delete("/tasks/{name}", status_code=202)
def delete_task(
    name: str,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    record = crud.get_task(db, name)
    if not record:
        raise HTTPException(status_code=404, detail="指定的巡检任务不存在。")
    crud.request_task_deletion(db, record)
    _submit_reconcile(runtime, name)
    return {"name": name, "deleting": True}


def _present_result(record: InspectResultRecord, report: Optional[dict]) -> schemas.ResultOut:
    return schemas.ResultOut(
        name=record.name,
        task_name=record.task_name,
        cluster_name=record.cluster_name,
        policy=record.policy,
        start_time=record.start_time,
        end_time=record.end_time,
        duration=record.duration,
        rule_totals=record.rule_totals,
        levels=record.levels,
        complete=record.complete,
        report=report,
    )


@app.get("/results/{name}", response_model=schemas.ResultOut)
def get_result(
    name: str,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
):
    record = crud.get_result(db, name)
    if not record:
        raise HTTPException(status_code=404, detail="指定的巡检结果不存在。")
    report: Optional[dict] = None
    try:
        report = json.loads(runtime.aggregator.read_report(name).to_json())
    except FileNotFoundError:
        logger.warning("Report file for result %s is missing.", name)
    return _present_result(record, report)


@app.delete("/results/{name}", status_code=204)
def delete_result(name: str, runtime: Runtime = Depends(get_runtime)):
    if not runtime.aggregator.delete_result(name):
        raise HTTPException(status_code=404, detail="指定的巡检结果不存在。")
    return None


@app.get("/audit-logs", response_model=List[schemas.AuditLogOut])
def list_audit_logs(limit: int = 100, db: Session = Depends(get_db)):
    return crud.list_audit_logs(db, limit=limit)
