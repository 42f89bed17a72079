import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from .clock import Clock, system_clock
from .config import Config, config as default_config
from .eligibility import PaymentEligibilityGate
from .fanout import Broadcaster, ConnectionManager
from .finalizer import LeaderboardFinalizer
from .participants import ParticipantService
from .repository import QuizRepository
from .scheduler import LifecycleDriver, build_scheduler
from .scoring import AnswerIntake
from .session import SessionRegistry, SessionStateMachine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything one server process runs, wired once at startup"""

    config: Config
    clock: Clock
    repo: QuizRepository
    manager: ConnectionManager
    broadcaster: Broadcaster
    registry: SessionRegistry
    finalizer: LeaderboardFinalizer
    sessions: SessionStateMachine
    intake: AnswerIntake
    participants: ParticipantService
    driver: LifecycleDriver
    scheduler: object
    instance_id: str

    async def start(self, recover: bool = True):
        await self.repo.ensure_indexes()
        await self.broadcaster.start()
        if recover:
            await self.driver.recover()
        self.driver.start_lease_sweep()
        await self.scheduler.start()

    async def stop(self):
        await self.driver.stop_lease_sweep()
        await self.scheduler.stop()
        await self.registry.release_all()
        await self.broadcaster.stop()
        await self.manager.close_all()


def build_services(
    db,
    redis=None,
    config: Config = default_config,
    clock: Clock = system_clock,
    eligibility=None,
    instance_id: Optional[str] = None,
    rng=None,
) -> Services:
    instance_id = instance_id or uuid.uuid4().hex
    repo = QuizRepository(db, config)
    manager = ConnectionManager(config)
    broadcaster = Broadcaster(manager, redis, config)
    registry = SessionRegistry()
    finalizer = LeaderboardFinalizer(repo, registry, broadcaster, clock, config)
    sessions = SessionStateMachine(repo, registry, broadcaster, finalizer, instance_id, clock, config, rng)
    intake = AnswerIntake(repo, sessions, broadcaster, clock, config)
    participants = ParticipantService(
        repo, eligibility or PaymentEligibilityGate(db, config), clock, config
    )
    driver = LifecycleDriver(repo, sessions, registry, finalizer, broadcaster, clock, config)
    scheduler = build_scheduler(driver, repo, redis, clock, config)
    logger.info(f"✓ Services wired (instance {instance_id[:8]}, scheduler {scheduler.name})")
    return Services(
        config=config,
        clock=clock,
        repo=repo,
        manager=manager,
        broadcaster=broadcaster,
        registry=registry,
        finalizer=finalizer,
        sessions=sessions,
        intake=intake,
        participants=participants,
        driver=driver,
        scheduler=scheduler,
        instance_id=instance_id,
    )
