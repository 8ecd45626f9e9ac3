from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient

from media_pipeline.api.main import create_app
from media_pipeline.container import build_container
from media_pipeline.models import (
    DatabaseConfig,
    JobPolicyConfig,
    MonitorConfig,
    PipelineConfig,
    QueueConfig,
    StorageConfig,
    WorkerConfig,
)
from media_pipeline.providers.storage import LocalStorage

from fakes import (
    SCRIPT,
    FakeCaptioner,
    FakeJoiner,
    FakePostProcessor,
    FakeRenderer,
    FakeSpeech,
    FakeText,
    FakeTranscriber,
    remote_media_client,
)

PUBLIC_BASE_URL = "http://media.test/media"


@pytest.fixture
def config(tmp_path):
    """Pipeline config pointing every file at tmp_path, with zero backoff."""
    no_delay = JobPolicyConfig(attempts=3, backoff_type="fixed", backoff_delay_ms=0)
    return PipelineConfig(
        database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'media.db'}"),
        queue=QueueConfig(db_path=str(tmp_path / "queue.db"), text_jobs=no_delay, video_jobs=no_delay),
        worker=WorkerConfig(concurrency=1, poll_interval_s=0.05, heartbeat_interval_s=60),
        monitor=MonitorConfig(enabled=False),
        storage=StorageConfig(root=str(tmp_path / "storage"), public_base_url=PUBLIC_BASE_URL),
    )


@pytest.fixture
def fakes():
    return SimpleNamespace(
        text=FakeText(),
        speech=FakeSpeech(),
        renderer=FakeRenderer(),
        captioner=FakeCaptioner(),
        transcriber=FakeTranscriber(),
        joiner=FakeJoiner(),
        post_processor=FakePostProcessor(),
    )


@pytest.fixture
def make_container(config, fakes):
    """Build a container wired to fakes. ``captions=False`` leaves captioning out."""
    built = []

    def make(captions: bool = False, **overrides):
        storage = LocalStorage(
            config.storage.root, config.storage.public_base_url, client=remote_media_client()
        )
        kwargs = dict(
            storage=storage,
            text=fakes.text,
            speech=fakes.speech,
            renderer=fakes.renderer,
            captioner=fakes.captioner if captions else None,
            transcriber=fakes.transcriber,
            joiner=fakes.joiner,
            post_processor=fakes.post_processor,
        )
        kwargs.update(overrides)
        container = build_container(config, **kwargs)
        container.store.create_schema()
        built.append(container)
        return container

    yield make

    for container in built:
        container.store.engine.dispose()


@pytest.fixture
def container(make_container):
    return make_container()


@pytest.fixture
def submission(container):
    """Helper creating an Article and a Submission with one PENDING output per kind."""

    def create(*kinds, language="ENGLISH", content=SCRIPT, **output_fields):
        article = container.store.create_article("org-1", "Water on a moon", content)
        sub = container.store.create_submission(article["id"], language=language)
        outputs = {
            kind: container.store.create_output(kind, sub["id"], **output_fields.get(kind.value, {}))
            for kind in kinds
        }
        return article, sub, outputs

    return create


@pytest.fixture
async def client(container):
    app = create_app(container)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
