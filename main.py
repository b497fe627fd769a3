from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from config.settings import settings
from database.db_manager import DatabaseManager
from models.errors import GatewayError, PermissionDeniedError
from models.schemas import (
    ActiveExtensionsResponse,
    BlockedExtension,
    CountResponse,
    CustomExtensionRequest,
    ExtensionCheckResponse,
    FixedToggleRequest,
    Member,
    MemberCreationRequest,
    MemberRole,
    Space,
    SpaceCreationRequest,
    SpaceCreationResponse,
    SpaceUpdateRequest,
    UploadedFile,
    UsernameCheckResponse,
)
from processors.archive_processor import ArchiveInspector
from services.audit import AuditEmitter
from services.extension_policy import ExtensionPolicyService
from services.mime_sniffing import ContentSniffer
from services.space_service import SpaceService
from services.storage import StorageCommitter
from utils.logger import get_logger, setup_logging
from workflows.upload_validation import UploadValidationPipeline

logger = get_logger(__name__)


@dataclass
class Gateway:
    db_manager: DatabaseManager
    audit: AuditEmitter
    policy: ExtensionPolicyService
    spaces: SpaceService
    storage: StorageCommitter
    pipeline: UploadValidationPipeline


def build_gateway(db_manager: DatabaseManager, upload_directory: Optional[str] = None) -> Gateway:
    audit = AuditEmitter(db_manager.audit_log)
    policy = ExtensionPolicyService(db_manager.blocked_extensions, audit)
    sniffer = ContentSniffer()
    storage = StorageCommitter(db_manager.uploaded_files, audit, upload_directory=upload_directory)
    return Gateway(
        db_manager=db_manager,
        audit=audit,
        policy=policy,
        spaces=SpaceService(db_manager.spaces, db_manager.members, policy),
        storage=storage,
        pipeline=UploadValidationPipeline(policy, sniffer, ArchiveInspector(sniffer), storage, audit),
    )


def create_app(db_manager: Optional[DatabaseManager] = None, upload_directory: Optional[str] = None) -> FastAPI:
    gateway = build_gateway(db_manager or DatabaseManager(), upload_directory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
        await gateway.db_manager.ensure_indexes()
        logger.info("Upload gateway started | storage: %s", gateway.storage.root)
        yield
        await gateway.db_manager.close()

    app = FastAPI(title="Upload Gateway", version="1.0.0", lifespan=lifespan)
    app.state.gateway = gateway

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # -- Spaces --------------------------------------------------------------

    @app.post("/api/spaces", response_model=SpaceCreationResponse, status_code=201)
    async def create_space(payload: SpaceCreationRequest):
        """Create a space together with its admin; the fixed extensions start inactive."""
        space, admin, seeded = await gateway.spaces.create_space_with_admin(
            payload.name,
            payload.description,
            payload.admin_username,
        )
        return SpaceCreationResponse(space=space, admin=admin, fixed_extensions_count=seeded)

    @app.get("/api/spaces", response_model=List[Space])
    async def list_spaces():
        return await gateway.spaces.list_spaces()

    @app.get("/api/spaces/{space_id}", response_model=Space)
    async def get_space(space_id: str):
        return await gateway.spaces.get_space(space_id)

    @app.patch("/api/spaces/{space_id}", response_model=Space)
    async def update_space(space_id: str, payload: SpaceUpdateRequest):
        await gateway.spaces.require_admin(space_id, payload.actor_id)
        return await gateway.spaces.update_space(space_id, payload.model_dump(exclude={"actor_id"}, exclude_unset=True))

    @app.delete("/api/spaces/{space_id}", status_code=204)
    async def delete_space(space_id: str, actor_id: str = Query(...)):
        await gateway.spaces.require_admin(space_id, actor_id)
        await gateway.spaces.soft_delete_space(space_id)

    @app.post("/api/spaces/{space_id}/members", response_model=Member, status_code=201)
    async def add_member(space_id: str, payload: MemberCreationRequest):
        await gateway.spaces.require_admin(space_id, payload.actor_id)
        return await gateway.spaces.add_member(space_id, payload.username, payload.role)

    @app.get("/api/spaces/{space_id}/members", response_model=List[Member])
    async def list_members(space_id: str, actor_id: str = Query(...)):
        await gateway.spaces.require_member(space_id, actor_id)
        return await gateway.spaces.list_members(space_id)

    @app.get("/api/spaces/{space_id}/members/check-username", response_model=UsernameCheckResponse)
    async def check_username(space_id: str, username: str = Query(...)):
        await gateway.spaces.get_space(space_id)
        taken = await gateway.spaces.username_taken(space_id, username)
        return UsernameCheckResponse(space_id=space_id, username=username.strip(), exists=taken)

    @app.get("/api/spaces/{space_id}/members/{member_id}", response_model=Member)
    async def get_member(space_id: str, member_id: str, actor_id: str = Query(...)):
        await gateway.spaces.require_member(space_id, actor_id)
        return await gateway.spaces.get_member(member_id, space_id=space_id)

    # -- Blocked extensions --------------------------------------------------

    @app.get("/api/blocked-extensions", response_model=List[BlockedExtension])
    async def list_blocked_extensions(
        space_id: str = Query(...),
        actor_id: str = Query(...),
        fixed: Optional[bool] = Query(default=None),
    ):
        """Every row of the space, inactive fixed entries included."""
        await gateway.spaces.require_member(space_id, actor_id)
        return await gateway.policy.list_extensions(space_id, fixed=fixed)

    @app.get("/api/blocked-extensions/active", response_model=ActiveExtensionsResponse)
    async def active_blocked_extensions(space_id: str = Query(...), actor_id: str = Query(...)):
        await gateway.spaces.require_member(space_id, actor_id)
        extensions = await gateway.policy.resolve(space_id)
        return ActiveExtensionsResponse(space_id=space_id, extensions=sorted(extensions))

    @app.patch("/api/blocked-extensions/fixed", response_model=BlockedExtension)
    async def toggle_fixed_extension(payload: FixedToggleRequest):
        await gateway.spaces.require_admin(payload.space_id, payload.actor_id)
        return await gateway.policy.toggle_fixed(payload.space_id, payload.extension, payload.actor_id)

    @app.post("/api/blocked-extensions/custom", response_model=BlockedExtension, status_code=201)
    async def add_custom_extension(payload: CustomExtensionRequest):
        await gateway.spaces.require_admin(payload.space_id, payload.actor_id)
        return await gateway.policy.add_custom(payload.space_id, payload.extension, payload.actor_id)

    @app.delete("/api/blocked-extensions/custom/{blocked_id}", status_code=204)
    async def remove_custom_extension(blocked_id: str, actor_id: str = Query(...)):
        row = await gateway.policy.get_extension(blocked_id)
        await gateway.spaces.require_admin(row.space_id, actor_id)
        await gateway.policy.remove_custom(blocked_id, actor_id, space_id=row.space_id)

    @app.get("/api/blocked-extensions/custom/count", response_model=CountResponse)
    async def count_custom_extensions(space_id: str = Query(...), actor_id: str = Query(...)):
        await gateway.spaces.require_member(space_id, actor_id)
        return CountResponse(space_id=space_id, count=await gateway.policy.count_custom(space_id))

    @app.get("/api/blocked-extensions/check", response_model=ExtensionCheckResponse)
    async def check_extension(space_id: str = Query(...), extension: str = Query(...), actor_id: str = Query(...)):
        """Whether an upload with this extension would be refused right now."""
        await gateway.spaces.require_member(space_id, actor_id)
        blocked = await gateway.policy.is_blocked(space_id, extension)
        return ExtensionCheckResponse(space_id=space_id, extension=extension, blocked=blocked)

    # -- Files ---------------------------------------------------------------

    @app.post("/api/files/upload", response_model=UploadedFile, status_code=201)
    async def upload_file(
        space_id: str = Form(...),
        uploader_id: str = Form(...),
        file: UploadFile = File(...),
    ):
        """
        Validate an upload (extension, content, archive contents) and store it.
        Rejections come back as 4xx with the failing rule in the body.
        """
        await gateway.spaces.require_member(space_id, uploader_id)
        try:
            return await gateway.pipeline.upload(
                space_id,
                uploader_id,
                file.filename,
                file.content_type,
                file.file,
            )
        finally:
            await file.close()

    @app.get("/api/files", response_model=List[UploadedFile])
    async def list_files(space_id: str = Query(...), actor_id: str = Query(...)):
        await gateway.spaces.require_member(space_id, actor_id)
        return await gateway.storage.list_files(space_id)

    @app.get("/api/files/count", response_model=CountResponse)
    async def count_files(space_id: str = Query(...), actor_id: str = Query(...)):
        await gateway.spaces.require_member(space_id, actor_id)
        return CountResponse(space_id=space_id, count=await gateway.storage.count_files(space_id))

    @app.get("/api/files/{file_id}/download")
    async def download_file(file_id: str, actor_id: str = Query(...)):
        record = await gateway.storage.get(file_id)
        await gateway.spaces.require_member(record.space_id, actor_id)
        record, path = await gateway.storage.open_for_download(file_id, actor_id)
        return FileResponse(path, media_type="application/octet-stream", filename=record.original_name)

    @app.delete("/api/files/{file_id}", status_code=204)
    async def delete_file(file_id: str, actor_id: str = Query(...)):
        record = await gateway.storage.get(file_id)
        member = await gateway.spaces.require_member(record.space_id, actor_id)
        if member.id != record.uploader_id and member.role is not MemberRole.ADMIN:
            raise PermissionDeniedError("Only the uploader or a space admin may delete a file")
        await gateway.storage.delete(file_id, actor_id)

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint
        """
        return {"status": "healthy", "service": "upload-gateway"}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
