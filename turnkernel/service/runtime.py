from __future__ import annotations

import threading
from pathlib import Path

from turnkernel.config import RetrievalBackendKind, get_settings, reset_settings_cache
from turnkernel.logging import get_logger
from turnkernel.service.fs import DirectoryLister
from turnkernel.service.gatekeeper import ToolGatekeeper
from turnkernel.service.ingress import IngressValidator
from turnkernel.service.model_backend import OpenAIModelClient, build_model_client
from turnkernel.service.normalizer import TextNormalizer
from turnkernel.service.responder import Responder
from turnkernel.service.retrieval import LocalStoreBackend, OpenAIStoreBackend
from turnkernel.service.router import RetrievalRouter
from turnkernel.service.telemetry import TelemetryRecorder
from turnkernel.storage.files import JsonFileRepository
from turnkernel.storage.memory import MemoryRepository

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Components are built once from ``Settings`` and receive their
    configuration through constructors. Tests swap individual attributes
    (``model``, ``backend``, ``repository``) before issuing requests.
    """

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            environment=settings.environment.value,
            use_memory_repository=settings.use_memory_repository,
            retrieval_backend=settings.retrieval_backend.value,
            test_mode=settings.test_mode,
        )

        state_root = Path(settings.state_root)
        try:
            self.repository = (
                MemoryRepository()
                if settings.use_memory_repository
                else JsonFileRepository(state_root)
            )
        except OSError as exc:
            logger.error("runtime_repository_init_failed", error_type=type(exc).__name__, error=str(exc))
            raise

        self.telemetry = TelemetryRecorder(
            state_root / "taps", max_bytes=settings.tap_max_bytes, repository=self.repository
        )

        if settings.retrieval_backend == RetrievalBackendKind.OPENAI:
            self.backend = OpenAIStoreBackend(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                retries=settings.upstream_retries,
            )
        else:
            self.backend = LocalStoreBackend(settings.stores_root)

        self.router = RetrievalRouter.from_settings(settings)
        self.gatekeeper = ToolGatekeeper(
            admin_token=settings.admin_token,
            environment=settings.environment,
            dev_bypass=settings.dev_tools_bypass,
        )
        self.ingress = IngressValidator(
            max_messages=settings.max_messages,
            max_message_chars=settings.max_message_chars,
            max_body_bytes=settings.inbound_max_bytes,
        )
        self.model = build_model_client(
            model=settings.model,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            retries=settings.upstream_retries,
        )
        punctuate_client = None
        if settings.openai_api_key:
            punctuate_client = OpenAIModelClient(
                model=settings.punctuate_model or settings.model,
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                retries=settings.upstream_retries,
            )
        self.normalizer = TextNormalizer(punctuate_client, max_chars=settings.punctuate_max_chars)
        self.lister = DirectoryLister.for_base(
            Path(settings.fs_list_root),
            state_root=state_root,
            stores_root=Path(settings.stores_root),
            max_entries=settings.fs_list_max_entries,
        )
        logger.info(
            "runtime_init_completed",
            stores=self.router.configured_store_ids(),
            model_client=type(self.model).__name__,
        )

    def responder(self) -> Responder:
        return Responder(
            settings=self.settings,
            gatekeeper=self.gatekeeper,
            router=self.router,
            backend=self.backend,
            repository=self.repository,
            telemetry=self.telemetry,
            model=self.model,
            lister=self.lister,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from building it concurrently.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
