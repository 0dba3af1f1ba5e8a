import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .config import LOG_LEVEL
from .routers import templates, instances, signing, participants, workflow_requests, users
from .db import init_db
from .instances import NotFound
from .lifecycle import FormValidationError, MissingRequiredFields, AlreadyCompleted, ExternalServiceFailure

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="PDF Forms API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    init_db()

@app.exception_handler(FormValidationError)
def form_validation_error(request: Request, exc: FormValidationError):
    body = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, MissingRequiredFields):
        body["fields"] = [m.label for m in exc.missing]
    status_code = 409 if isinstance(exc, AlreadyCompleted) else 422
    return JSONResponse(status_code=status_code, content=body)

@app.exception_handler(ExternalServiceFailure)
def external_service_failure(request: Request, exc: ExternalServiceFailure):
    return JSONResponse(status_code=502, content={"detail": str(exc), "code": "try_again"})

@app.exception_handler(NotFound)
def not_found(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

app.include_router(users.router, prefix="/api/users", tags=["users"])
app.include_router(participants.router, prefix="/api/participants", tags=["participants"])
app.include_router(workflow_requests.router, prefix="/api/workflow-requests", tags=["workflow-requests"])
app.include_router(templates.router, prefix="/api/templates", tags=["templates"])
app.include_router(instances.router, prefix="/api/instances", tags=["instances"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])

@app.get("/")
def root():
    return {"ok": True, "service": "pdf-forms-api"}
