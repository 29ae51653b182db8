import logging

from fastapi import FastAPI, HTTPException, Response, status

from app.services.dispatcher import DispatchEngine, DispatchScheduler
from app.services.exceptions import DuplicateUsername, RecipientNotFound
from app.types.api_schemas import (
    GroupCreate,
    GroupOut,
    MemberAdd,
    ReminderCreate,
    ReminderOut,
    SubscriptionCreate,
    UserCreate,
    UserOut,
)
from app.types.dispatch_contract import from_epoch_ms
from config import Settings, settings as default_settings
from db import Database

_LOGGER = logging.getLogger(__name__)


def create_app(settings: Settings = None, engine: DispatchEngine = None) -> FastAPI:
    """Build the API around an explicitly constructed dispatch engine."""
    settings = settings or default_settings
    engine = engine or DispatchEngine.from_settings(settings)
    database: Database = engine.database
    scheduler = DispatchScheduler(engine, interval=settings.DISPATCH_INTERVAL_SECONDS)

    app = FastAPI()
    app.state.engine = engine
    app.state.scheduler = scheduler

    @app.on_event("startup")
    async def startup_event():
        if settings.DISPATCH_ON_STARTUP:
            scheduler.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await scheduler.stop()
        await engine.close()

    # --------------------------------------------
    # Users & groups
    # --------------------------------------------
    @app.post("/v1/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
    async def create_user(body: UserCreate):
        try:
            user = await database.create_user(
                body.username, body.forename, body.phone_number, body.timezone
            )
        except DuplicateUsername:
            raise HTTPException(status.HTTP_409_CONFLICT, "Username already taken")
        return UserOut(id=user.id, username=user.username, forename=user.forename)

    @app.post("/v1/groups", response_model=GroupOut, status_code=status.HTTP_201_CREATED)
    async def create_group(body: GroupCreate):
        group = await database.create_group(body.name)
        return GroupOut(id=group.id, name=group.name)

    @app.post("/v1/groups/{group_id}/members", status_code=status.HTTP_204_NO_CONTENT)
    async def add_member(group_id: int, body: MemberAdd):
        try:
            await database.add_member(group_id, body.user_id)
        except LookupError as e:
            raise HTTPException(status.HTTP_404_NOT_FOUND, str(e))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/v1/users/{user_id}/subscriptions", status_code=status.HTTP_201_CREATED)
    async def create_subscription(user_id: int, body: SubscriptionCreate):
        try:
            sub = await database.create_subscription(
                user_id,
                body.title,
                body.subscription.endpoint,
                body.subscription.keys.p256dh,
                body.subscription.keys.auth,
            )
        except RecipientNotFound as e:
            raise HTTPException(status.HTTP_404_NOT_FOUND, str(e))
        return {"id": sub.id}

    # --------------------------------------------
    # Reminders
    # --------------------------------------------
    @app.post("/v1/reminders", status_code=status.HTTP_201_CREATED)
    async def create_reminder(body: ReminderCreate):
        try:
            reminder = await database.create_reminder(
                body.action, from_epoch_ms(body.due), [r.id for r in body.recipients]
            )
        except RecipientNotFound as e:
            raise HTTPException(status.HTTP_404_NOT_FOUND, str(e))
        _LOGGER.info("Reminder %s stored, due %s", reminder.id, reminder.due.isoformat())
        return {"id": reminder.id}

    @app.get("/v1/reminders/{reminder_id}", response_model=ReminderOut)
    async def get_reminder(reminder_id: int):
        reminder = await database.get_reminder(reminder_id)
        if reminder is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Reminder not found")
        return reminder

    return app


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


_configure_logging(default_settings.LOG_LEVEL)
app = create_app()
