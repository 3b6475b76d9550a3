"""FastAPI health and introspection API for the vipingress controller."""

import asyncio
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request

from .controller import Controller
from .events import EventRecorder
from .logging_config import get_logger, log_api_request, log_api_response, log_function_entry, log_function_exit
from .models import OperatorConfig
from .reconciler import IngressReconciler
from .state import IngressPhase, IngressState, StateTracker
from .store import KubeStore
from .tailnet import DirectoryClient, TailnetStatusClient

logger = get_logger(__name__)

app = FastAPI(
    title="vipingress",
    description="Exposes Kubernetes Ingresses as tailnet VIP services through a ProxyGroup",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests and responses."""
    start_time = asyncio.get_event_loop().time()

    log_api_request(logger, request.method, str(request.url.path),
                    client_ip=request.client.host if request.client else "unknown",
                    user_agent=request.headers.get("user-agent", "unknown"))

    response = await call_next(request)

    duration = asyncio.get_event_loop().time() - start_time
    log_api_response(logger, request.method, str(request.url.path),
                     response.status_code,
                     duration_ms=round(duration * 1000, 2))

    return response

# Global controller instance
controller: Optional[Controller] = None


def get_controller() -> Controller:
    """Get the global Controller instance."""
    if controller is None:
        raise HTTPException(status_code=503, detail="Controller not initialized")
    return controller


def build_controller(operator_config: OperatorConfig) -> Controller:
    """Wire the real Kubernetes and tailnet adapters into a Controller."""
    store = KubeStore(operator_config)
    store.connect()
    reconciler = IngressReconciler(
        store=store,
        directory=DirectoryClient.from_config(operator_config),
        tailnet=TailnetStatusClient(operator_config.local_api_socket, operator_config.request_timeout),
        recorder=EventRecorder(store),
        operator_config=operator_config,
        tracker=StateTracker(),
    )
    return Controller(store, reconciler, operator_config)


def initialize_controller(operator_config: OperatorConfig, instance: Optional[Controller] = None) -> None:
    """Initialize the global Controller instance."""
    log_function_entry(logger, "initialize_controller",
                       operator_id=operator_config.operator_id,
                       workers=operator_config.workers)
    global controller
    controller = instance or build_controller(operator_config)
    logger.info("Controller initialized",
                operator_id=operator_config.operator_id,
                operator_namespace=operator_config.operator_namespace,
                ingress_class=operator_config.ingress_class,
                workers=operator_config.workers)
    log_function_exit(logger, "initialize_controller", status="success")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "vipingress"}


@app.get("/ingresses", response_model=List[IngressState])
async def get_ingresses(
    phase: Optional[IngressPhase] = Query(None, description="Filter by phase"),
    namespace: Optional[str] = Query(None, description="Filter by namespace"),
):
    """Last observed phase of every Ingress the controller has seen."""
    ctrl = get_controller()
    states = ctrl.reconciler.tracker.all()
    if phase is not None:
        states = [s for s in states if s.phase == phase]
    if namespace is not None:
        states = [s for s in states if s.key.split("/", 1)[0] == namespace]
    logger.debug("Returning Ingress states", count=len(states), phase=phase, namespace=namespace)
    return states


@app.get("/ingresses/{namespace}/{name}", response_model=IngressState)
async def get_ingress(namespace: str, name: str):
    """Last observed phase of one Ingress."""
    ctrl = get_controller()
    key = f"{namespace}/{name}"
    if key not in {s.key for s in ctrl.reconciler.tracker.all()}:
        raise HTTPException(status_code=404, detail=f"Ingress {key} not found")
    return ctrl.reconciler.tracker.get(key)


@app.get("/config")
async def get_config():
    """Get current operator configuration (sanitized)."""
    ctrl = get_controller()
    config_dict = ctrl.config.model_dump()

    for field in ("kubeconfig_path", "api_token_file"):
        config_dict[field] = "***" if config_dict.get(field) else None

    return config_dict


@app.on_event("startup")
async def startup_event():
    """Start the controller on application startup."""
    if controller:
        await controller.start()
        logger.info("Controller started")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the controller on application shutdown."""
    logger.info("Shutting down vipingress API")
    if controller:
        await controller.stop()
