from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError, PyMongoError
from pathlib import Path
from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import calendar
import os
import logging
import uuid
import time

from completion_client import ChatCompletionClient
from generation_pipeline import (
    GenerationPipeline,
    MCQ_ENDPOINT,
    PAPER_ENDPOINT,
    VOICE_NOTES_ENDPOINT,
    GENERIC_ERROR_MESSAGE,
)
from identity import IdentityVerifier
from rate_limiter import FixedWindowRateLimiter
from razorpay_service import RazorpayService
from usage_ledger import MongoUsageLedger
from validation import (
    MAX_SUBJECT_LENGTH,
    MAX_TOPIC_LENGTH,
    MAX_TEXT_LENGTH,
    VALID_DIFFICULTIES,
    sanitize_input,
    validate_choice,
    validate_string_input,
)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

mongo_url = os.environ["MONGO_URL"]
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ["DB_NAME"]]

AUTH_JWT_SECRET = os.environ["AUTH_JWT_SECRET"]
AUTH_JWT_AUDIENCE = os.environ.get("AUTH_JWT_AUDIENCE", "authenticated").strip()

LLM_API_KEY = os.environ.get("LLM_API_KEY", "").strip()
LLM_BASE_URL = os.environ.get("LLM_BASE_URL", "https://ai.gateway.lovable.dev/v1").rstrip("/")
LLM_CHAT_MODEL = os.environ.get("LLM_CHAT_MODEL", "google/gemini-3-flash-preview")
LLM_TIMEOUT_SECONDS = float(os.environ.get("LLM_TIMEOUT_SECONDS", "60"))
LLM_MAX_ATTEMPTS = int(os.environ.get("LLM_MAX_ATTEMPTS", "1"))
LLM_FORCE_JSON_MODE = os.environ.get("LLM_FORCE_JSON_MODE", "false").lower() == "true"

GEN_RATE_LIMIT_WINDOW_SECONDS = float(os.environ.get("GEN_RATE_LIMIT_WINDOW_SECONDS", "60"))
GEN_RATE_LIMIT_MAX_REQUESTS = int(os.environ.get("GEN_RATE_LIMIT_MAX_REQUESTS", "5"))
FREE_PLAN_DAILY_LIMIT = int(os.environ.get("FREE_PLAN_DAILY_LIMIT", "10"))

PLAN_MONTHLY_AMOUNT_PAISE = int(os.environ.get("PLAN_MONTHLY_AMOUNT_PAISE", "4900"))
PLAN_LIFETIME_AMOUNT_PAISE = int(os.environ.get("PLAN_LIFETIME_AMOUNT_PAISE", "9900"))
PLAN_CURRENCY = os.environ.get("PLAN_CURRENCY", "INR")
SAVED_ITEMS_LIST_LIMIT = int(os.environ.get("SAVED_ITEMS_LIST_LIMIT", "200"))

CORS_ALLOWED_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]
CORS_ORIGINS = [origin.strip() for origin in os.environ.get("CORS_ORIGINS", "*").split(",") if origin.strip()]
SAVED_COLLECTIONS = {
    "mcqs": "saved_mcqs",
    "papers": "saved_papers",
    "notes": "saved_notes",
}

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

identity_verifier = IdentityVerifier(AUTH_JWT_SECRET, audience=AUTH_JWT_AUDIENCE)
rate_limiter = FixedWindowRateLimiter(
    max_requests=GEN_RATE_LIMIT_MAX_REQUESTS,
    window_seconds=GEN_RATE_LIMIT_WINDOW_SECONDS,
)
usage_ledger = MongoUsageLedger(db, free_daily_limit=FREE_PLAN_DAILY_LIMIT)
completion_client = ChatCompletionClient(
    api_key=LLM_API_KEY,
    base_url=LLM_BASE_URL,
    model=LLM_CHAT_MODEL,
    timeout_seconds=LLM_TIMEOUT_SECONDS,
    max_attempts=LLM_MAX_ATTEMPTS,
    force_json_object=LLM_FORCE_JSON_MODE,
)
generation_pipeline = GenerationPipeline(
    identity_verifier=identity_verifier,
    rate_limiter=rate_limiter,
    usage_ledger=usage_ledger,
    completion_client=completion_client,
)
razorpay_service = RazorpayService()

app = FastAPI(title="Smart Exam Toolkit API")
api_router = APIRouter(prefix="/api")


class SubscriptionPlan(BaseModel):
    plan_id: str
    name: str
    amount: int
    currency: str
    period: str
    duration_months: Optional[int] = None
    purchasable: bool = True


class CreateOrderRequest(BaseModel):
    planId: Optional[str] = None


class PaymentVerifyRequest(BaseModel):
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    planId: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=100)


class SaveMcqsRequest(BaseModel):
    subject: str
    topic: str
    difficulty: str
    questions: List[Dict[str, Any]] = Field(min_length=1)


class SavePaperRequest(BaseModel):
    subject: str
    institution_name: Optional[str] = None
    paper: Dict[str, Any]


class SaveNotesRequest(BaseModel):
    title: str
    original_text: str
    summary: Optional[str] = None
    mcqs: Optional[List[Dict[str, Any]]] = None


def record_metric(name: str, value: float = 1.0, tags: Optional[Dict[str, str]] = None) -> None:
    logger.info("metric=%s value=%s tags=%s", name, value, tags or {})


def cors_headers(request: Request) -> Dict[str, str]:
    headers = {"Access-Control-Allow-Headers": ", ".join(CORS_ALLOWED_HEADERS)}
    if "*" in CORS_ORIGINS:
        headers["Access-Control-Allow-Origin"] = "*"
        return headers
    origin = request.headers.get("origin")
    headers["Vary"] = "Origin"
    if origin and origin in CORS_ORIGINS:
        headers["Access-Control-Allow-Origin"] = origin
    return headers


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def get_subscription_plans() -> List[SubscriptionPlan]:
    return [
        SubscriptionPlan(
            plan_id="free",
            name="Free",
            amount=0,
            currency=PLAN_CURRENCY,
            period="forever",
            purchasable=False,
        ),
        SubscriptionPlan(
            plan_id="monthly",
            name="Monthly",
            amount=PLAN_MONTHLY_AMOUNT_PAISE,
            currency=PLAN_CURRENCY,
            period="month",
            duration_months=1,
        ),
        SubscriptionPlan(
            plan_id="lifetime",
            name="Lifetime",
            amount=PLAN_LIFETIME_AMOUNT_PAISE,
            currency=PLAN_CURRENCY,
            period="one-time",
        ),
    ]


def get_purchasable_plan(plan_id: Optional[str]) -> SubscriptionPlan:
    for plan in get_subscription_plans():
        if plan.plan_id == (plan_id or "").strip().lower() and plan.purchasable:
            return plan
    raise HTTPException(status_code=400, detail="Invalid plan")


async def read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


async def get_current_account(request: Request) -> str:
    return identity_verifier.verify_header(request.headers.get("Authorization"))


async def get_or_create_profile(account_id: str) -> Dict[str, Any]:
    now_iso = utc_now().isoformat()
    await db.profiles.update_one(
        {"user_id": account_id},
        {
            "$setOnInsert": {
                "plan": "free",
                "full_name": None,
                "created_at": now_iso,
            }
        },
        upsert=True,
    )
    return await db.profiles.find_one({"user_id": account_id}, {"_id": 0})


async def activate_subscription(
    account_id: str,
    plan: SubscriptionPlan,
    order_id: str,
    payment_id: str,
) -> None:
    existing = await db.subscriptions.find_one({"razorpay_payment_id": payment_id}, {"_id": 0})
    if existing:
        # A retry after a failed plan update must still apply the plan.
        logger.info(
            "subscription_already_recorded user_id=%s payment_id=%s plan=%s",
            account_id,
            payment_id,
            existing.get("plan"),
        )
        await apply_recorded_subscription(account_id, existing, order_id, payment_id)
        return

    starts_at = utc_now()
    expires_at = add_months(starts_at, plan.duration_months) if plan.duration_months else None
    subscription_doc = {
        "id": str(uuid.uuid4()),
        "user_id": account_id,
        "plan": plan.plan_id,
        "amount": plan.amount,
        "currency": plan.currency,
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "starts_at": starts_at.isoformat(),
        "expires_at": expires_at.isoformat() if expires_at else None,
        "status": "active",
        "created_at": starts_at.isoformat(),
    }
    try:
        await db.subscriptions.insert_one(subscription_doc)
    except DuplicateKeyError:
        logger.info("subscription_insert_duplicate user_id=%s payment_id=%s", account_id, payment_id)
        winner = await db.subscriptions.find_one({"razorpay_payment_id": payment_id}, {"_id": 0})
        await apply_recorded_subscription(account_id, winner or subscription_doc, order_id, payment_id)
        return
    except PyMongoError as exc:
        logger.error("subscription_insert_failed user_id=%s payment_id=%s error=%s", account_id, payment_id, exc)
        raise HTTPException(status_code=500, detail="Failed to save subscription")

    await set_profile_plan(account_id, plan.plan_id, order_id, payment_id)
    record_metric("subscription_activated", tags={"plan": plan.plan_id})


async def apply_recorded_subscription(
    account_id: str,
    subscription: Dict[str, Any],
    order_id: str,
    payment_id: str,
) -> None:
    if subscription.get("user_id") != account_id:
        logger.warning(
            "subscription_owner_mismatch user_id=%s payment_id=%s owner=%s",
            account_id,
            payment_id,
            subscription.get("user_id"),
        )
        raise HTTPException(status_code=400, detail="Invalid payment details")
    await set_profile_plan(account_id, subscription["plan"], order_id, payment_id)


async def set_profile_plan(account_id: str, plan_id: str, order_id: str, payment_id: str) -> None:
    now_iso = utc_now().isoformat()
    try:
        await db.profiles.update_one(
            {"user_id": account_id},
            {
                "$set": {"plan": plan_id, "updated_at": now_iso},
                "$setOnInsert": {"created_at": now_iso},
            },
            upsert=True,
        )
        await db.payment_orders.update_one(
            {"order_id": order_id, "user_id": account_id},
            {"$set": {"status": "paid", "payment_id": payment_id, "paid_at": now_iso}},
        )
    except PyMongoError as exc:
        logger.error("profile_plan_update_failed user_id=%s plan=%s error=%s", account_id, plan_id, exc)
        raise HTTPException(status_code=500, detail="Failed to update plan")


def paper_total_marks(paper: Dict[str, Any]) -> int:
    total = 0
    for key, marks in (("oneMarks", 1), ("twoMarks", 2), ("fiveMarks", 5)):
        questions = paper.get(key)
        if isinstance(questions, list):
            total += len(questions) * marks
    return total


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception(
            "request_id=%s method=%s path=%s status=500 duration_ms=%s error=%s",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
            str(e),
        )
        raise
    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_id=%s method=%s path=%s status=%s duration_ms=%s",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(
        "HTTPException request_id=%s path=%s status=%s detail=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=cors_headers(request),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(
        "RequestValidationError request_id=%s path=%s errors=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.errors(),
    )
    return JSONResponse(status_code=400, content={"error": "Invalid request body"}, headers=cors_headers(request))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled server error: %s", exc)
    return JSONResponse(status_code=500, content={"error": GENERIC_ERROR_MESSAGE}, headers=cors_headers(request))


@app.options("/{full_path:path}", include_in_schema=False)
async def cors_options(request: Request, full_path: str):
    return Response(status_code=200, headers=cors_headers(request))


@api_router.post("/generate-mcq")
async def generate_mcq(request: Request):
    body = await read_json_body(request)
    return await generation_pipeline.run(MCQ_ENDPOINT, body, request.headers.get("Authorization"))


@api_router.post("/generate-paper")
async def generate_paper(request: Request):
    body = await read_json_body(request)
    return await generation_pipeline.run(PAPER_ENDPOINT, body, request.headers.get("Authorization"))


@api_router.post("/process-voice-notes")
async def process_voice_notes(request: Request):
    body = await read_json_body(request)
    return await generation_pipeline.run(VOICE_NOTES_ENDPOINT, body, request.headers.get("Authorization"))


@api_router.get("/subscriptions/plans", response_model=List[SubscriptionPlan])
async def subscription_plans():
    return get_subscription_plans()


@api_router.post("/create-razorpay-order")
async def create_razorpay_order(
    payload: CreateOrderRequest,
    account_id: str = Depends(get_current_account),
):
    plan = get_purchasable_plan(payload.planId)
    if not razorpay_service.enabled:
        logger.error("razorpay_not_configured user_id=%s", account_id)
        raise HTTPException(status_code=500, detail="Payment gateway not configured")

    order = await razorpay_service.create_order(
        amount=plan.amount,
        currency=plan.currency,
        notes={"user_id": account_id, "plan": plan.plan_id},
    )
    if not order.get("success"):
        logger.error("razorpay_order_failed user_id=%s plan=%s error=%s", account_id, plan.plan_id, order.get("error"))
        raise HTTPException(status_code=500, detail="Failed to create order")

    await db.payment_orders.insert_one(
        {
            "order_id": order["order_id"],
            "user_id": account_id,
            "plan": plan.plan_id,
            "amount": order["amount"],
            "currency": order["currency"],
            "receipt": order.get("receipt"),
            "status": "created",
            "created_at": utc_now().isoformat(),
        }
    )
    logger.info("razorpay_order_created user_id=%s order_id=%s plan=%s", account_id, order["order_id"], plan.plan_id)
    return {
        "orderId": order["order_id"],
        "amount": order["amount"],
        "currency": order["currency"],
        "keyId": razorpay_service.key_id,
    }


@api_router.post("/verify-razorpay-payment")
async def verify_razorpay_payment(
    payload: PaymentVerifyRequest,
    account_id: str = Depends(get_current_account),
):
    order_id = (payload.razorpay_order_id or "").strip()
    payment_id = (payload.razorpay_payment_id or "").strip()
    signature = (payload.razorpay_signature or "").strip()
    if not order_id or not payment_id or not signature or not payload.planId:
        raise HTTPException(status_code=400, detail="Missing payment details")
    plan = get_purchasable_plan(payload.planId)

    if not razorpay_service.can_verify:
        logger.error("razorpay_not_configured user_id=%s", account_id)
        raise HTTPException(status_code=500, detail="Payment gateway not configured")

    if not razorpay_service.verify_signature(order_id, payment_id, signature):
        logger.warning("razorpay_signature_invalid user_id=%s order_id=%s", account_id, order_id)
        record_metric("payment_signature_invalid")
        raise HTTPException(status_code=400, detail="Invalid payment signature")

    order = await db.payment_orders.find_one({"order_id": order_id}, {"_id": 0})
    if order and (order.get("user_id") != account_id or order.get("plan") != plan.plan_id):
        logger.warning(
            "razorpay_order_mismatch user_id=%s order_id=%s order_user=%s order_plan=%s",
            account_id,
            order_id,
            order.get("user_id"),
            order.get("plan"),
        )
        raise HTTPException(status_code=400, detail="Invalid payment details")

    await activate_subscription(account_id, plan, order_id, payment_id)
    return {
        "success": True,
        "message": f"Successfully upgraded to {plan.plan_id} plan!",
        "plan": plan.plan_id,
    }


@api_router.get("/profile")
async def get_profile(account_id: str = Depends(get_current_account)):
    return await get_or_create_profile(account_id)


@api_router.put("/profile")
async def update_profile(
    payload: ProfileUpdateRequest,
    account_id: str = Depends(get_current_account),
):
    full_name = validate_string_input(payload.full_name, "Full name", 100)
    await get_or_create_profile(account_id)
    await db.profiles.update_one(
        {"user_id": account_id},
        {"$set": {"full_name": full_name, "updated_at": utc_now().isoformat()}},
    )
    return await db.profiles.find_one({"user_id": account_id}, {"_id": 0})


@api_router.get("/usage")
async def get_usage(account_id: str = Depends(get_current_account)):
    return await usage_ledger.get_usage_snapshot(account_id)


@api_router.post("/saved/mcqs")
async def save_mcqs(payload: SaveMcqsRequest, account_id: str = Depends(get_current_account)):
    subject = validate_string_input(payload.subject, "Subject", MAX_SUBJECT_LENGTH)
    topic = validate_string_input(payload.topic, "Topic", MAX_TOPIC_LENGTH)
    difficulty = validate_choice(payload.difficulty, "Difficulty", VALID_DIFFICULTIES)
    doc = {
        "id": str(uuid.uuid4()),
        "user_id": account_id,
        "title": f"{subject} - {topic}",
        "subject": subject,
        "topic": topic,
        "difficulty": difficulty,
        "questions": payload.questions,
        "question_count": len(payload.questions),
        "created_at": utc_now().isoformat(),
    }
    await db.saved_mcqs.insert_one(doc)
    doc.pop("_id", None)
    return doc


@api_router.post("/saved/papers")
async def save_paper(payload: SavePaperRequest, account_id: str = Depends(get_current_account)):
    subject = validate_string_input(payload.subject, "Subject", MAX_SUBJECT_LENGTH)
    institution_name = sanitize_input(payload.institution_name) or None
    doc = {
        "id": str(uuid.uuid4()),
        "user_id": account_id,
        "title": f"{subject} Question Paper",
        "subject": subject,
        "institution_name": institution_name,
        "questions": payload.paper,
        "total_marks": paper_total_marks(payload.paper),
        "created_at": utc_now().isoformat(),
    }
    await db.saved_papers.insert_one(doc)
    doc.pop("_id", None)
    return doc


@api_router.post("/saved/notes")
async def save_notes(payload: SaveNotesRequest, account_id: str = Depends(get_current_account)):
    title = validate_string_input(payload.title, "Title", MAX_TOPIC_LENGTH)
    original_text = validate_string_input(payload.original_text, "Text", MAX_TEXT_LENGTH)
    doc = {
        "id": str(uuid.uuid4()),
        "user_id": account_id,
        "title": title,
        "original_text": original_text,
        "summary": sanitize_input(payload.summary) or None,
        "generated_mcqs": payload.mcqs or None,
        "created_at": utc_now().isoformat(),
    }
    await db.saved_notes.insert_one(doc)
    doc.pop("_id", None)
    return doc


@api_router.get("/saved")
async def list_saved_content(account_id: str = Depends(get_current_account)):
    results: Dict[str, List[Dict[str, Any]]] = {}
    for kind, collection_name in SAVED_COLLECTIONS.items():
        results[kind] = (
            await db[collection_name]
            .find({"user_id": account_id}, {"_id": 0})
            .sort("created_at", -1)
            .to_list(SAVED_ITEMS_LIST_LIMIT)
        )
    return results


@api_router.delete("/saved/{kind}/{item_id}")
async def delete_saved_item(kind: str, item_id: str, account_id: str = Depends(get_current_account)):
    collection_name = SAVED_COLLECTIONS.get(kind)
    if not collection_name:
        raise HTTPException(status_code=400, detail="Invalid saved content type")
    result = await db[collection_name].delete_one({"id": item_id, "user_id": account_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Saved item not found")
    return {"message": "Item removed from saved content", "id": item_id}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "Smart Exam Toolkit API"}


@app.on_event("startup")
async def startup_checks():
    if GEN_RATE_LIMIT_WINDOW_SECONDS <= 0 or GEN_RATE_LIMIT_MAX_REQUESTS <= 0:
        raise RuntimeError("GEN_RATE_LIMIT settings must be greater than zero")
    if FREE_PLAN_DAILY_LIMIT < 0:
        raise RuntimeError("FREE_PLAN_DAILY_LIMIT must not be negative")
    if LLM_MAX_ATTEMPTS < 1:
        raise RuntimeError("LLM_MAX_ATTEMPTS must be at least 1")
    if not completion_client.configured:
        logger.warning("LLM_API_KEY is not configured; generation endpoints will fail")
    if not razorpay_service.enabled:
        logger.warning("Razorpay is not configured; payment endpoints will fail")

    await db.profiles.create_index("user_id", unique=True)
    await db.usage_counters.create_index([("user_id", 1), ("period", 1)], unique=True)
    await db.subscriptions.create_index("razorpay_payment_id", unique=True)
    await db.subscriptions.create_index([("user_id", 1), ("status", 1), ("expires_at", -1)])
    await db.payment_orders.create_index("order_id", unique=True)
    await db.payment_orders.create_index("user_id")
    for collection_name in SAVED_COLLECTIONS.values():
        await db[collection_name].create_index("id", unique=True)
        await db[collection_name].create_index([("user_id", 1), ("created_at", -1)])

    logger.info("Startup checks completed")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


app.include_router(api_router)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=CORS_ALLOWED_HEADERS,
)
