import json
import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from auth import init_firebase, is_admin, lookup_role, require_admin, require_self_or_admin, verified_email
from borrowing import BorrowAdmission, return_borrow
from database import BOOKS, BORROWED_BOOKS, USERS, create_document, get_db, get_documents, parse_object_id, serialize
from errors import DuplicateUser, Forbidden, LibraryError, NotFoundError, ValidationError, error_body
from notifications import NOTIFICATIONS, NotificationHub
from schemas import Book, BorrowedBook, Role, UpdateBookPayload, UpdateUserPayload, User
from settings import settings

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def resolve_role(email: str):
    return lookup_role(get_db(), email)


hub = NotificationHub(role_lookup=resolve_role)
admission = BorrowAdmission()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=" * 60)
    logger.info("STARTING BOOK LIBRARY API")
    logger.info("=" * 60)
    init_firebase(settings.FB_SERVICE_KEY)
    try:
        get_db()[USERS].create_index([("email", ASCENDING)], unique=True)
    except PyMongoError as e:
        logger.error(f"Could not ensure users.email index: {e}")

    yield

    logger.info("Shutting down, closing database connections")
    database.client.close()


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error envelope: {"message": ...}, details only when explicitly enabled
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.details or exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc, settings.EXPOSE_ERROR_DETAILS))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else "Invalid request body"
    return JSONResponse(status_code=400, content={"message": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception(f"Database error on {request.method} {request.url.path}")
    body = {"message": "Internal server error"}
    if settings.EXPOSE_ERROR_DETAILS:
        body["details"] = str(exc)
    return JSONResponse(status_code=500, content=body)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    body = {"message": "Internal server error"}
    if settings.EXPOSE_ERROR_DETAILS:
        body["details"] = str(exc)
    return JSONResponse(status_code=500, content=body)


# Health
@app.get("/")
def root():
    return {"name": settings.APP_NAME, "status": "ok"}


@app.get("/health")
def health():
    try:
        database.ping()
    except PyMongoError as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Database not available")
    return {"status": "healthy", "database": "connected"}


# Books
def _paginate(collection, query: dict, page: int, limit: int) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    total = collection.count_documents(query)
    books = collection.find(query).skip((page - 1) * limit).limit(limit)
    return {
        "books": [serialize(b) for b in books],
        "totalBooks": total,
        "totalPages": math.ceil(total / limit),
        "currentPage": page,
    }


def _get_book_or_404(db: Database, book_id: str) -> dict:
    oid = parse_object_id(book_id)
    book = db[BOOKS].find_one({"_id": oid}) if oid else None
    if not book:
        raise NotFoundError("Book not found")
    return book


def _require_owner_or_admin(db: Database, book: dict, email: str) -> None:
    if book.get("authorEmail") != email and not is_admin(db, email):
        raise Forbidden("Forbidden access! Only the owner can change this book.")


@app.get("/api/allBooks")
def all_books(category: Optional[str] = None, page: int = 1, limit: int = 5, db: Database = Depends(get_db)):
    query = {"category": category} if category else {}
    return _paginate(db[BOOKS], query, page, limit)


@app.get("/api/myBooks/{email}")
def my_books(email: str, page: int = 1, limit: int = 5, caller: str = Depends(verified_email), db: Database = Depends(get_db)):
    if caller != email:
        raise Forbidden("Forbidden access! You can only view your own books.")
    return _paginate(db[BOOKS], {"authorEmail": email}, page, limit)


@app.get("/api/booksStatistics")
def books_statistics(db: Database = Depends(get_db)):
    books = db[BOOKS]
    stock = list(books.aggregate([{"$group": {"_id": None, "totalStock": {"$sum": "$quantity"}}}]))
    by_category = list(books.aggregate([{"$group": {"_id": "$category", "count": {"$sum": 1}}}]))
    return {
        "totalBooks": books.count_documents({}),
        "totalUniqueBooks": len(books.distinct("title")),
        "totalStock": stock[0]["totalStock"] if stock else 0,
        "totalBorrowed": db[BORROWED_BOOKS].count_documents({}),
        "booksByCategory": by_category,
    }


@app.get("/api/topUsersByBooks")
def top_users_by_books(db: Database = Depends(get_db)):
    return list(db[BOOKS].aggregate([
        {"$group": {"_id": "$authorEmail", "booksCount": {"$sum": 1}, "authorName": {"$first": "$authorName"}}},
        {"$sort": {"booksCount": -1}},
        {"$limit": 10},
    ]))


@app.get("/api/allBooks/{book_id}")
def get_book(book_id: str, db: Database = Depends(get_db)):
    return serialize(_get_book_or_404(db, book_id))


@app.get("/api/topRatingBooks")
def top_rating_books(db: Database = Depends(get_db)):
    return [serialize(b) for b in db[BOOKS].find().sort("rating", -1).limit(10)]


@app.post("/api/addBooks", status_code=201)
def add_book(book: Book, background_tasks: BackgroundTasks, email: str = Depends(verified_email), db: Database = Depends(get_db)):
    if not (book.title or "").strip():
        raise ValidationError("Book title is required")
    book.authorEmail = email
    bid = create_document(BOOKS, book, target=db)
    logger.info(f"{email} added book {bid}")
    background_tasks.add_task(hub.on_event, None, "newBook", {"bookId": bid, "title": book.title, "authorEmail": email})
    return {"insertedId": bid}


@app.patch("/api/updateBook/{book_id}")
def update_book(book_id: str, payload: UpdateBookPayload, email: str = Depends(verified_email), db: Database = Depends(get_db)):
    book = _get_book_or_404(db, book_id)
    _require_owner_or_admin(db, book, email)

    update = {k: v for k, v in payload.model_dump(mode="json").items() if v is not None}
    for protected in ("_id", "authorEmail", "created_at"):
        update.pop(protected, None)
    update["updated_at"] = datetime.now(timezone.utc)

    res = db[BOOKS].update_one({"_id": book["_id"]}, {"$set": update})
    if res.matched_count == 0:
        raise NotFoundError("Book not found")
    return {"matchedCount": res.matched_count, "modifiedCount": res.modified_count}


@app.delete("/api/deleteBook/{book_id}")
def delete_book(book_id: str, email: str = Depends(verified_email), db: Database = Depends(get_db)):
    book = _get_book_or_404(db, book_id)
    _require_owner_or_admin(db, book, email)
    res = db[BOOKS].delete_one({"_id": book["_id"]})
    return {"deletedCount": res.deleted_count}


# Borrowed books
@app.get("/api/borrowedBooksInfo")
def borrowed_books_info(db: Database = Depends(get_db)):
    return get_documents(BORROWED_BOOKS, target=db)


@app.get("/api/borrowedBooks/{email}")
def borrowed_books_by_email(email: str, db: Database = Depends(get_db)):
    records = list(db[BORROWED_BOOKS].find({"email": email}))
    records_by_book = {r.get("bookId"): r for r in records}
    book_ids = [oid for oid in (parse_object_id(r.get("bookId")) for r in records) if oid]
    books = db[BOOKS].find({"_id": {"$in": book_ids}})
    return [serialize({**book, **records_by_book[str(book["_id"])]}) for book in books]


@app.post("/api/addBorrowedBookInfo")
def add_borrowed_book_info(borrow: BorrowedBook, background_tasks: BackgroundTasks, db: Database = Depends(get_db)):
    borrow_id = admission.try_borrow(db[BORROWED_BOOKS], borrow)
    background_tasks.add_task(hub.on_event, None, "newBorrow", {"borrowId": borrow_id, "email": borrow.email, "bookId": borrow.bookId})
    return {"insertedId": borrow_id}


@app.delete("/api/deleteBorrowedBook/{borrow_id}")
def delete_borrowed_book(borrow_id: str, db: Database = Depends(get_db)):
    return {"deletedCount": return_borrow(db, borrow_id)}


# Users
@app.post("/api/users", status_code=201)
def create_user(user: User, db: Database = Depends(get_db)):
    email = (user.email or "").strip()
    if not email:
        raise ValidationError("Email is required")
    if db[USERS].find_one({"email": email}):
        raise DuplicateUser()

    # roles are only granted through an admin update
    user.email = email
    user.role = Role.USER
    try:
        uid = create_document(USERS, user, target=db)
    except DuplicateKeyError as e:
        raise DuplicateUser() from e
    logger.info(f"Registered user {email}")
    return {"insertedId": uid}


@app.get("/api/users")
def list_users(admin_email: str = Depends(require_admin), db: Database = Depends(get_db)):
    return get_documents(USERS, target=db)


@app.get("/api/users/{email}")
def get_user(email: str, caller: str = Depends(verified_email), db: Database = Depends(get_db)):
    require_self_or_admin(db, caller, email)
    user = db[USERS].find_one({"email": email})
    if not user:
        raise NotFoundError("User not found")
    return serialize(user)


@app.patch("/api/users/{email}")
def update_user(email: str, payload: UpdateUserPayload, caller: str = Depends(verified_email), db: Database = Depends(get_db)):
    require_self_or_admin(db, caller, email)
    update = {k: v for k, v in payload.model_dump(mode="json").items() if v is not None}
    for protected in ("_id", "email", "created_at"):
        update.pop(protected, None)
    if "role" in update and not is_admin(db, caller):
        raise Forbidden("Forbidden access! Admin privileges required to change roles.")
    update["updated_at"] = datetime.now(timezone.utc)

    res = db[USERS].update_one({"email": email}, {"$set": update})
    if res.matched_count == 0:
        raise NotFoundError("User not found")
    return {"matchedCount": res.matched_count, "modifiedCount": res.modified_count}


@app.delete("/api/users/{email}")
def delete_user(email: str, admin_email: str = Depends(require_admin), db: Database = Depends(get_db)):
    books = db[BOOKS].delete_many({"authorEmail": email})
    res = db[USERS].delete_one({"email": email})
    if res.deleted_count == 0:
        raise NotFoundError("User not found")
    logger.info(f"{admin_email} deleted user {email} and {books.deleted_count} book(s)")
    return {"message": "User and their books deleted successfully", "deletedBooks": books.deleted_count}


# Realtime notifications
@app.websocket("/ws")
async def notifications_socket(websocket: WebSocket):
    await websocket.accept()
    connection_id = uuid4().hex
    hub.connect(connection_id, websocket.send_json)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
                event, data = frame["event"], frame.get("data") or {}
            except (ValueError, KeyError, TypeError, AttributeError):
                await websocket.send_json({"event": "error", "data": {"message": "Malformed frame"}})
                continue

            if event == "join":
                await hub.on_join(connection_id, data if isinstance(data, dict) else {})
            elif event in NOTIFICATIONS:
                await hub.on_event(connection_id, event, data)
            else:
                await websocket.send_json({"event": "error", "data": {"message": f"Unknown event: {event}"}})
    except WebSocketDisconnect:
        pass
    finally:
        hub.on_disconnect(connection_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
