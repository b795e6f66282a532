import argparse
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ASCENDING, DESCENDING
from pydantic import TypeAdapter, ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError

from config import Settings
from database import (
    AGREEMENTS,
    ANNOUNCEMENTS,
    APARTMENTS,
    BUILDINGS,
    COUPONS,
    NOTICES,
    PAYMENTS,
    USERS,
    Database,
    get_database,
    parse_object_id,
    serialize,
    utcnow,
)
from errors import (
    ConflictError,
    Forbidden,
    NotFound,
    ServiceUnavailable,
    Unauthorized,
    ValidationError,
    install_error_handlers,
)
from identity import IdentityBridge, IdentityProviderUnavailable, InvalidExternalToken
from notices import issue_notice
from payments import PaymentGateway
from reconcile import reconcile
from schemas import (
    AgreementCreate,
    AgreementStatusUpdate,
    Agreement,
    Announcement,
    AnnouncementCreate,
    Apartment,
    Building,
    Coupon,
    CouponCreate,
    CouponUpdate,
    CouponValidation,
    Notice,
    NoticeIssue,
    Payment,
    PaymentIntentRequest,
    Role,
    RoleUpdate,
    TokenRequest,
    User,
    UserCreate,
    UserRoleUpdate,
)
from security import (
    IdentityClaim,
    Principal,
    SessionTokenCodec,
    clear_session_cookie,
    get_identity,
    get_token_codec,
    require_admin,
    require_any_role,
    require_tenant,
    resolve_role,
    set_session_cookie,
)

logger = logging.getLogger("towertrack.main")

SCHEMA_MODELS = (
    (APARTMENTS, Apartment),
    (AGREEMENTS, Agreement),
    (USERS, User),
    (COUPONS, Coupon),
    (ANNOUNCEMENTS, Announcement),
    (PAYMENTS, Payment),
    (NOTICES, Notice),
    (BUILDINGS, Building),
)


# ---------------------- Dependencies ----------------------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


def get_identity_bridge(request: Request) -> Optional[IdentityBridge]:
    return request.app.state.identity_bridge


def require_ready(request: Request) -> None:
    if not getattr(request.app.state, "ready", False):
        raise ServiceUnavailable()


def _object_id_or_400(value: str, label: str):
    oid = parse_object_id(value)
    if oid is None:
        raise ValidationError(f"Invalid {label} id")
    return oid


_DATETIME = TypeAdapter(datetime)


def _as_utc(value: Any) -> datetime:
    """Coerce a stored expiry (datetime or date string) to an aware UTC datetime."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError:
            value = _DATETIME.validate_python(value)
    elif not isinstance(value, datetime):
        value = _DATETIME.validate_python(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    payment_gateway: Optional[PaymentGateway] = None,
    identity_bridge: Optional[IdentityBridge] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    database = database or Database.from_url(settings.database_url, settings.database_name)
    if payment_gateway is None:
        payment_gateway = PaymentGateway(settings.stripe_secret_key, settings.payment_currency)
    if identity_bridge is None and settings.firebase_project_id:
        identity_bridge = IdentityBridge(settings.firebase_project_id)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.reconcile_on_startup:
            await run_in_threadpool(reconcile, database)
        else:
            logger.warning("Startup reconciliation disabled; agreement uniqueness is not enforced")
        app.state.ready = True
        logger.info("TowerTrack ready (env=%s)", settings.app_env)
        yield
        app.state.ready = False

    app = FastAPI(title="TowerTrack", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.token_codec = SessionTokenCodec.from_settings(settings)
    app.state.payment_gateway = payment_gateway
    app.state.identity_bridge = identity_bridge
    app.state.ready = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    # ---------------------- Auth ----------------------
    @app.post("/jwt")
    def issue_jwt(
        payload: TokenRequest,
        response: Response,
        settings: Settings = Depends(get_settings),
        codec: SessionTokenCodec = Depends(get_token_codec),
        bridge: Optional[IdentityBridge] = Depends(get_identity_bridge),
    ):
        if bridge is not None:
            if not payload.id_token:
                raise ValidationError("id_token required")
            try:
                claim = bridge.exchange(payload.id_token)
            except InvalidExternalToken as exc:
                raise Unauthorized("Invalid identity token") from exc
            except IdentityProviderUnavailable as exc:
                logger.error("Identity provider unavailable: %s", exc)
                raise ServiceUnavailable("Identity provider unavailable") from exc
            claim = IdentityClaim(email=claim.email.lower(), name=claim.name)
        else:
            if not payload.email:
                raise ValidationError("Email required")
            claim = IdentityClaim(email=str(payload.email).lower(), name=payload.name)

        token = codec.issue(claim)
        set_session_cookie(response, token, settings)
        return {"message": "JWT issued", "token": token}

    @app.post("/logout")
    def logout(response: Response, settings: Settings = Depends(get_settings)):
        clear_session_cookie(response, settings)
        return {"message": "Logged out successfully"}

    # ---------------------- Apartments ----------------------
    @app.get("/apartments")
    def list_apartments(
        min_rent: Optional[float] = None,
        max_rent: Optional[float] = None,
        skip: int = 0,
        limit: Optional[int] = None,
        database: Database = Depends(get_database),
    ):
        if skip < 0 or (limit is not None and limit < 1):
            raise ValidationError("Invalid pagination")
        query = {}
        rent = {}
        if min_rent is not None:
            rent["$gte"] = min_rent
        if max_rent is not None:
            rent["$lte"] = max_rent
        if rent:
            query["rent"] = rent
        docs = database.get_documents(APARTMENTS, query, sort=[("floor_no", ASCENDING)], limit=limit, skip=skip)
        return [serialize(d) for d in docs]

    # ---------------------- Coupons ----------------------
    @app.get("/coupons")
    def list_coupons(database: Database = Depends(get_database)):
        docs = database.get_documents(COUPONS, {}, sort=[("valid_till", ASCENDING)])
        return [serialize(d) for d in docs]

    @app.post("/coupons", status_code=status.HTTP_201_CREATED)
    def create_coupon(
        payload: CouponCreate,
        _: Principal = Depends(require_admin),
        database: Database = Depends(get_database),
    ):
        if database.coupons.find_one({"code": payload.code}):
            raise ConflictError("Coupon code already exists")
        try:
            inserted_id = database.create_document(COUPONS, payload.model_dump())
        except DuplicateKeyError as exc:
            raise ConflictError("Coupon code already exists") from exc
        return {"inserted_id": inserted_id}

    @app.patch("/coupons/{coupon_id}")
    def update_coupon(
        coupon_id: str,
        payload: CouponUpdate,
        _: Principal = Depends(require_admin),
        database: Database = Depends(get_database),
    ):
        oid = _object_id_or_400(coupon_id, "coupon")
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("Nothing to update")
        changes["updated_at"] = utcnow()
        try:
            result = database.coupons.update_one({"_id": oid}, {"$set": changes})
        except DuplicateKeyError as exc:
            raise ConflictError("Coupon code already exists") from exc
        if not result.matched_count:
            raise NotFound("Coupon not found")
        return {"message": "Coupon updated", "modified_count": result.modified_count}

    @app.delete("/coupons/{coupon_id}")
    def delete_coupon(
        coupon_id: str,
        _: Principal = Depends(require_admin),
        database: Database = Depends(get_database),
    ):
        oid = _object_id_or_400(coupon_id, "coupon")
        result = database.coupons.delete_one({"_id": oid})
        if not result.deleted_count:
            raise NotFound("Coupon not found")
        return {"message": "Coupon deleted", "deleted_count": result.deleted_count}

    @app.post("/validate-coupon")
    def validate_coupon(payload: CouponValidation, database: Database = Depends(get_database)):
        code = payload.code.strip().upper()
        coupon = database.coupons.find_one({"code": code})
        if not coupon:
            return JSONResponse(status_code=404, content={"valid": False, "message": "Coupon not found"})
        valid_till = coupon.get("valid_till")
        if valid_till is not None:
            try:
                expires = _as_utc(valid_till)
            except PydanticValidationError:
                logger.warning("Coupon %s has unreadable valid_till %r", code, valid_till)
                return JSONResponse(status_code=400, content={"valid": False, "message": "Coupon has an invalid expiry date"})
            if expires < utcnow():
                return JSONResponse(status_code=400, content={"valid": False, "message": "Coupon has expired"})
        return {"valid": True, "code": code, "discount_percentage": coupon.get("discount")}

    # ---------------------- Agreements ----------------------
    @app.post("/agreements", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_ready)])
    def create_agreement(
        payload: AgreementCreate,
        principal: Principal = Depends(require_tenant),
        database: Database = Depends(get_database),
    ):
        email = str(payload.user_email).lower()
        if email != principal.email.lower():
            raise Forbidden("Forbidden: agreements can only be filed for yourself")
        if database.agreements.find_one({"user_email": email}):
            raise ConflictError("Already applied")
        doc = payload.model_dump()
        doc.update({"user_email": email, "status": "pending"})
        try:
            inserted_id = database.create_document(AGREEMENTS, doc)
        except DuplicateKeyError as exc:
            raise ConflictError("Already applied") from exc
        logger.info("Agreement %s filed by %s", inserted_id, email)
        return {"inserted_id": inserted_id}

    @app.get("/agreements")
    def list_agreements(
        status: Optional[str] = None,
        _: Principal = Depends(require_admin),
        database: Database = Depends(get_database),
    ):
        query = {"status": status} if status else {}
        docs = database.get_documents(AGREEMENTS, query, sort=[("created_at", DESCENDING)])
        return [serialize(d) for d in docs]

    @app.get("/agreements/member/{email}")
    def get_member_agreement(
        email: str,
        _: IdentityClaim = Depends(get_identity),
        database: Database = Depends(get_database),
    ):
        pattern = re.compile("^" + re.escape(email) + "$", re.IGNORECASE)
        return serialize(database.agreements.find_one({"user_email": pattern, "status": "checked"}))

    @app.patch("/agreements/{agreement_id}/status")
    def update_agreement_status(
        agreement_id: str,
        payload: AgreementStatusUpdate,
        _: Principal = Depends(require_admin),
        database: Database = Depends(get_database),
    ):
        oid = _object_id_or_400(agreement_id, "agreement")
        result = database.agreements.update_one(
            {"_id": oid}, {"$set": {"status": payload.status, "updated_at": utcnow()}}
        )
        if not result.matched_count:
            raise NotFound("Agreement not found")
        return {"message": "Agreement status updated", "modified_count": result.modified_count}

    # ---------------------- Users ----------------------
    @app.post("/users", status_code=status.HTTP_201_CREATED)
    def register_user(payload: UserCreate, database: Database = Depends(get_database)):
        email = str(payload.email).lower()
        if database.users.find_one({"email": email}):
            raise ConflictError("User already exists")
        try:
            inserted_id = database.create_document(
                USERS, {"email": email, "name": payload.name, "role": Role.USER.value}
            )
        except DuplicateKeyError as exc:
            raise ConflictError("User already exists") from exc
        return {"inserted_id": inserted_id}

    @app.get("/users")
    def list_users(_: Principal = Depends(require_admin), database: Database = Depends(get_database)):
        return [serialize(u) for u in database.get_documents(USERS, {}, sort=[("email", ASCENDING)])]

    @app.patch("/users/role")
    def update_user_role_by_body(
        payload: UserRoleUpdate,
        _: Principal = Depends(require_admin),
        database: Database = Depends(get_database),
    ):
        return _set_role(database, str(payload.email).lower(), payload.role)

    @app.get("/users/role/{email}")
    def get_user_role(
        email: str,
        _: IdentityClaim = Depends(get_identity),
        database: Database = Depends(get_database),
    ):
        return {"role": resolve_role(database, email.lower()).value}

    @app.get("/users/{email}")
    def user_exists(
        email: str,
        _: Principal = Depends(require_any_role),
        database: Database = Depends(get_database),
    ):
        return {"exists": database.users.find_one({"email": email.lower()}) is not None}

    @app.patch("/users/{email}")
    def update_user_role(
        email: str,
        payload: RoleUpdate,
        _: Principal = Depends(require_admin),
        database: Database = Depends(get_database),
    ):
        return _set_role(database, email.lower(), payload.role)

    # ---------------------- Announcements ----------------------
    @app.post("/announcements", status_code=status.HTTP_201_CREATED)
    def create_announcement(
        payload: AnnouncementCreate,
        _: Principal = Depends(require_admin),
        database: Database = Depends(get_database),
    ):
        return {"inserted_id": database.create_document(ANNOUNCEMENTS, payload.model_dump())}

    @app.get("/announcements")
    def list_announcements(_: IdentityClaim = Depends(get_identity), database: Database = Depends(get_database)):
        docs = database.get_documents(ANNOUNCEMENTS, {}, sort=[("created_at", DESCENDING)])
        return [serialize(d) for d in docs]

    # ---------------------- Payments ----------------------
    @app.post("/create-payment-intent")
    def create_payment_intent(
        payload: PaymentIntentRequest,
        principal: Principal = Depends(require_any_role),
        gateway: PaymentGateway = Depends(get_payment_gateway),
    ):
        client_secret = gateway.create_intent(payload.amount)
        logger.info("Payment intent created for %s (%d)", principal.email, payload.amount)
        return {"client_secret": client_secret}

    @app.post("/payments", status_code=status.HTTP_201_CREATED)
    def record_payment(
        payload: Payment,
        _: Principal = Depends(require_any_role),
        database: Database = Depends(get_database),
    ):
        doc = payload.model_dump()
        doc["email"] = str(payload.email).lower()
        return {"inserted_id": database.create_document(PAYMENTS, doc)}

    @app.get("/payments/user/{email}")
    def list_user_payments(
        email: str,
        _: IdentityClaim = Depends(get_identity),
        database: Database = Depends(get_database),
    ):
        docs = database.get_documents(PAYMENTS, {"email": email.lower()}, sort=[("created_at", DESCENDING)])
        return [serialize(d) for d in docs]

    # ---------------------- Notices ----------------------
    @app.post("/notices/issue", status_code=status.HTTP_201_CREATED)
    def issue_notice_route(
        payload: NoticeIssue,
        _: Principal = Depends(require_admin),
        database: Database = Depends(get_database),
    ):
        notice = issue_notice(database, str(payload.user_email).lower(), payload.apartment_id, payload.reason)
        return {"message": "Notice issued", "notice": serialize(notice)}

    def _list_notices(email: str, database: Database):
        docs = database.get_documents(NOTICES, {"user_email": email.lower()}, sort=[("date", DESCENDING)])
        return [serialize(d) for d in docs]

    @app.get("/notices/user/{email}")
    def list_notices_for_user(
        email: str,
        _: Principal = Depends(require_any_role),
        database: Database = Depends(get_database),
    ):
        return _list_notices(email, database)

    @app.get("/notices/users/{email}")
    def list_notices_for_user_alias(
        email: str,
        _: Principal = Depends(require_any_role),
        database: Database = Depends(get_database),
    ):
        return _list_notices(email, database)

    # ---------------------- Buildings ----------------------
    @app.get("/buildings")
    def list_buildings(database: Database = Depends(get_database)):
        docs = database.get_documents(BUILDINGS, {}, sort=[("created_at", DESCENDING)])
        return [serialize(d) for d in docs]

    @app.post("/buildings", status_code=status.HTTP_201_CREATED)
    def create_building(
        payload: Building,
        _: Principal = Depends(require_admin),
        database: Database = Depends(get_database),
    ):
        return {"inserted_id": database.create_document(BUILDINGS, payload.model_dump())}

    # ---------------------- Health ----------------------
    @app.get("/")
    def read_root():
        return {"message": "Hello TowerTrack World!"}

    @app.get("/health")
    def health(request: Request, database: Database = Depends(get_database)):
        return {
            "ok": True,
            "env": settings.app_env,
            "ready": bool(request.app.state.ready),
            "database": "connected" if database.ping() else "unavailable",
        }

    @app.get("/schema")
    def schema_info():
        return {
            "collections": [
                {"name": name, "fields": list(model.model_fields)} for name, model in SCHEMA_MODELS
            ]
        }

    return app


def _set_role(database: Database, email: str, role: Role) -> dict:
    result = database.users.update_one({"email": email}, {"$set": {"role": role.value, "updated_at": utcnow()}})
    if not result.matched_count:
        raise NotFound("User not found")
    logger.info("Role of %s set to %s", email, role.value)
    return {"message": "Role updated", "modified_count": result.modified_count}


# ---------------------- CLI ----------------------

def set_role(database: Database, email: str, role: Role, name: Optional[str] = None) -> bool:
    """Create or update a user with ``role``. Returns True when a new user was created."""
    email = email.lower()
    now = utcnow()
    result = database.users.update_one(
        {"email": email},
        {
            "$set": {"role": role.value, "updated_at": now},
            "$setOnInsert": {"name": name or email.split("@")[0], "created_at": now},
        },
        upsert=True,
    )
    return result.upserted_id is not None


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TowerTrack backend")
    subparsers = parser.add_subparsers(dest="command")
    parser.set_defaults(command="serve", host="0.0.0.0", port=8000)

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    subparsers.add_parser("reconcile", help="Remove duplicate agreements and install indexes")

    role_parser = subparsers.add_parser("set-role", help="Create or update a user's role")
    role_parser.add_argument("email")
    role_parser.add_argument("role", choices=[r.value for r in Role])
    role_parser.add_argument("--name", default=None)

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None, database: Optional[Database] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = _parse_args(argv)
    settings = Settings.from_env()

    if args.command == "serve":
        import uvicorn

        uvicorn.run(create_app(settings), host=args.host, port=args.port)
        return 0

    if database is None:
        database = Database.from_url(settings.database_url, settings.database_name)
    try:
        if args.command == "reconcile":
            removed = reconcile(database)
            print(f"Removed {removed} duplicate agreement(s)")
        elif args.command == "set-role":
            created = set_role(database, args.email, Role(args.role), args.name)
            print(f"{'Created' if created else 'Updated'} {args.email.lower()} with role {args.role}")
    finally:
        database.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
