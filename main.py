import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Sequence

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import EmailStr, Field
from pymongo.errors import PyMongoError

from accounts import AccountService
from cart import CartService, serialize_cart
from config import Settings, get_settings
from database import connect, ensure_indexes, utcnow
from errors import NotFound, Unauthorized, register_exception_handlers
from mailer import Mailer
from repositories import CartRepository, ProductRepository, UserRepository
from schemas import ApiModel, User, VariantSelection
from security import SCOPE_ACCESS, SCOPE_PASSWORD_RESET, PasswordHasher, TokenClaims, TokenIssuer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")
bearer_scheme = HTTPBearer(auto_error=False)


# Helpers
class RegisterRequest(ApiModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ForgetPasswordRequest(ApiModel):
    email: EmailStr


class VerifyOtpRequest(ApiModel):
    email: EmailStr
    otp: str = Field(..., min_length=1, max_length=12)


class ChangePasswordRequest(ApiModel):
    new_password: str


class AddToCartRequest(ApiModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    variant_id: Optional[str] = None
    variant: Optional[VariantSelection] = None


class UpdateCartItemRequest(ApiModel):
    quantity: int = Field(..., ge=0, description="0 removes the line")


class RemoveCartItemRequest(ApiModel):
    item_id: str = Field(..., min_length=1)


class CreateModeratorRequest(ApiModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str


# Dependencies
def get_account_service(request: Request) -> AccountService:
    state = request.app.state
    return AccountService(
        UserRepository(state.db), state.hasher, state.tokens, state.mailer, state.settings, state.clock
    )


def get_cart_service(request: Request) -> CartService:
    state = request.app.state
    return CartService(CartRepository(state.db), ProductRepository(state.db), state.clock)


def get_product_repository(request: Request) -> ProductRepository:
    return ProductRepository(request.app.state.db)


def get_token_claims(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> TokenClaims:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("No token provided")
    return request.app.state.tokens.verify(credentials.credentials)


def require_scopes(*scopes: str):
    allowed: Sequence[str] = scopes

    def dependency(
        claims: TokenClaims = Depends(get_token_claims),
        accounts: AccountService = Depends(get_account_service),
    ) -> User:
        return accounts.authenticate(claims, allowed)

    return dependency


current_user = require_scopes(SCOPE_ACCESS)
password_change_user = require_scopes(SCOPE_ACCESS, SCOPE_PASSWORD_RESET)


def admin_user(user: User = Depends(current_user)) -> User:
    return AccountService.require_admin(user)


# Auth
@router.post("/user/register-self", status_code=201)
def register(payload: RegisterRequest, accounts: AccountService = Depends(get_account_service)):
    token, user = accounts.register(payload.name, payload.email, payload.password)
    return {"message": "User registered successfully", "token": token, "user": user.public()}


@router.post("/user/login")
def login(payload: LoginRequest, accounts: AccountService = Depends(get_account_service)):
    token, user = accounts.login(payload.email, payload.password)
    return {"message": "Login successful", "token": token, "user": user.public()}


@router.get("/user/refresh-token")
def refresh_token(user: User = Depends(current_user), accounts: AccountService = Depends(get_account_service)):
    return {"token": accounts.refresh(user)}


@router.get("/user/me")
def my_profile(user: User = Depends(current_user)):
    return {"message": "User profile retrieved successfully", "data": user.public()}


@router.post("/user/forget-password")
def forget_password(payload: ForgetPasswordRequest, accounts: AccountService = Depends(get_account_service)):
    accounts.request_otp(payload.email)
    return {"message": "Password reset email sent successfully"}


@router.post("/user/verify-otp")
def verify_otp(payload: VerifyOtpRequest, accounts: AccountService = Depends(get_account_service)):
    token = accounts.verify_otp(payload.email, payload.otp)
    return {"message": "OTP verified successfully", "token": token}


@router.put("/user/change-password")
def change_password(
    payload: ChangePasswordRequest,
    user: User = Depends(password_change_user),
    accounts: AccountService = Depends(get_account_service),
):
    accounts.change_password(user.id, payload.new_password)
    return {"message": "Password changed successfully"}


# Moderators
@router.post("/user/create-moderator", status_code=201)
def create_moderator(
    payload: CreateModeratorRequest,
    admin: User = Depends(admin_user),
    accounts: AccountService = Depends(get_account_service),
):
    moderator = accounts.create_moderator(admin, payload.name, payload.email, payload.password)
    return {"message": "Moderator created successfully", "user": moderator.public()}


@router.get("/user/moderators")
def list_moderators(admin: User = Depends(admin_user), accounts: AccountService = Depends(get_account_service)):
    moderators = [m.public() for m in accounts.list_moderators()]
    return {"message": "Moderators fetched successfully", "data": {"moderators": moderators}}


@router.delete("/user/moderators/{email}")
def delete_moderator(
    email: str, admin: User = Depends(admin_user), accounts: AccountService = Depends(get_account_service)
):
    accounts.set_moderator_deleted(email, True)
    return {"message": "Moderator deleted successfully"}


@router.put("/user/moderators/{email}/restore")
def restore_moderator(
    email: str, admin: User = Depends(admin_user), accounts: AccountService = Depends(get_account_service)
):
    accounts.set_moderator_deleted(email, False)
    return {"message": "Moderator restored successfully"}


# Products
@router.get("/products")
def list_products(
    category: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    products: ProductRepository = Depends(get_product_repository),
):
    return [p.model_dump(by_alias=True) for p in products.list_active(category=category, q=q, limit=limit)]


@router.get("/products/{product_id}")
def get_product(product_id: str, products: ProductRepository = Depends(get_product_repository)):
    product = products.find_active_by_id(product_id)
    if product is None:
        raise NotFound("Product not found")
    return product.model_dump(by_alias=True)


# Cart
@router.get("/cart")
def get_cart(user: User = Depends(current_user), carts: CartService = Depends(get_cart_service)):
    cart = carts.get_cart(user.id)
    return {
        "message": "Cart retrieved successfully",
        "data": {"cart": serialize_cart(cart), "summary": carts.summary(user.id)},
    }


@router.get("/cart/summary")
def get_cart_summary(user: User = Depends(current_user), carts: CartService = Depends(get_cart_service)):
    return {"message": "Cart summary retrieved successfully", "data": {"summary": carts.summary(user.id)}}


@router.get("/cart/validate")
def validate_cart(
    include_details: bool = Query(False, alias="includeDetails"),
    user: User = Depends(current_user),
    carts: CartService = Depends(get_cart_service),
):
    return {"message": "Cart validation completed", "data": carts.validate(user.id, include_details)}


@router.post("/cart/add")
def add_to_cart(
    payload: AddToCartRequest,
    user: User = Depends(current_user),
    carts: CartService = Depends(get_cart_service),
):
    variant_id = payload.variant_id or (payload.variant.variant_id if payload.variant else None)
    cart, added = carts.add_item(user.id, payload.product_id, payload.quantity, variant_id, payload.variant)
    return {"message": "Item added to cart successfully", "data": {"cart": serialize_cart(cart), "addedItem": added}}


@router.put("/cart/items/{item_id}")
def update_cart_item(
    item_id: str,
    payload: UpdateCartItemRequest,
    user: User = Depends(current_user),
    carts: CartService = Depends(get_cart_service),
):
    cart, updated = carts.update_quantity(user.id, item_id, payload.quantity)
    return {"message": "Cart item updated successfully", "data": {"cart": serialize_cart(cart), "updatedItem": updated}}


def _remove(user: User, item_id: str, carts: CartService) -> dict:
    cart, removed = carts.remove_item(user.id, item_id)
    return {"message": "Item removed from cart successfully", "data": {"cart": serialize_cart(cart), "removedItem": removed}}


@router.delete("/cart/items/{item_id}")
def remove_cart_item(item_id: str, user: User = Depends(current_user), carts: CartService = Depends(get_cart_service)):
    return _remove(user, item_id, carts)


@router.post("/cart/remove")
def remove_from_cart(
    payload: RemoveCartItemRequest,
    user: User = Depends(current_user),
    carts: CartService = Depends(get_cart_service),
):
    return _remove(user, payload.item_id, carts)


@router.delete("/cart/clear")
def clear_cart(user: User = Depends(current_user), carts: CartService = Depends(get_cart_service)):
    cart, cleared = carts.clear(user.id)
    return {"message": "Cart cleared successfully", "data": {"cart": serialize_cart(cart), "clearedSummary": cleared}}


def create_app(settings: Optional[Settings] = None, db=None, mailer=None, clock=utcnow) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if settings.has_weak_jwt_secret and not settings.is_development:
        logger.warning("JWT_SECRET is unset or shorter than 32 bytes; set a strong secret before serving traffic")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_indexes(app.state.db)
        yield

    app = FastAPI(title="E-Commerce Express API", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db if db is not None else connect(settings)
    app.state.mailer = mailer or Mailer(settings)
    app.state.clock = clock
    app.state.hasher = PasswordHasher(rounds=settings.BCRYPT_ROUNDS)
    app.state.tokens = TokenIssuer(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app, settings)

    # Health
    @app.get("/")
    def read_root():
        return {"message": "E-Commerce Express backend running"}

    @app.get("/test")
    def test_database():
        try:
            collections: List[str] = app.state.db.list_collection_names()
            return {"backend": "ok", "db": "ok", "collections": collections[:10]}
        except PyMongoError as e:
            return {"backend": "ok", "db": f"error: {str(e)[:80]}"}

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().PORT)
