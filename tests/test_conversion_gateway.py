import base64
import os

import pytest
import pytest_asyncio
from conftest import CONVERSION_URL, make_wav, wait_until

from miovo_bridge.conversion_gateway import ConversionGateway
from miovo_bridge.errors import BackendError, CallerError, StorageError
from miovo_bridge.models import (
    ConvertVoiceRequest,
    StartTrainingRequest,
    UploadTrainingDataRequest,
)
from miovo_bridge.storage import TrainingDataStorage, decode_base64_payload, validate_file_name
from miovo_bridge.tasks import BackgroundTasks
from miovo_bridge.training import TrainingJobManager


@pytest.fixture
def storage(tmp_path):
    return TrainingDataStorage(str(tmp_path / "uploads"), str(tmp_path / "models"))


@pytest_asyncio.fixture
async def tasks():
    background = BackgroundTasks()
    yield background
    await background.cancel_all()


def make_gateway(backend, storage, tasks, **kwargs):
    jobs = TrainingJobManager(tasks, tick_seconds=0.01, epoch_step=10)
    return ConversionGateway(
        backend,
        CONVERSION_URL,
        storage=storage,
        jobs=jobs,
        tasks=tasks,
        upload_complete_delay=0.01,
        **kwargs,
    )


@pytest.fixture
def gateway(backend, storage, tasks):
    return make_gateway(backend, storage, tasks)


def upload_request(data: bytes, name: str = "voice.wav", size: int | None = None, as_uri: bool = True):
    encoded = base64.b64encode(data).decode()
    return UploadTrainingDataRequest(
        file_name=name,
        file_data=f"data:audio/wav;base64,{encoded}" if as_uri else encoded,
        file_size=len(data) if size is None else size,
    )


async def test_upload_round_trip(gateway, storage):
    data = make_wav(0.25) + bytes(range(256))
    record = await gateway.upload_training_data(upload_request(data))

    assert record.file_size == len(data)
    assert os.path.dirname(record.storage_path) == storage.upload_dir
    assert record.storage_path.endswith("_voice.wav")
    assert await storage.read(record.upload_id) == data


async def test_upload_accepts_raw_base64(gateway, storage):
    record = await gateway.upload_training_data(upload_request(b"abc", as_uri=False))
    assert await storage.read(record.upload_id) == b"abc"


async def test_upload_rejects_size_mismatch(gateway, storage):
    with pytest.raises(CallerError, match="fileSize mismatch"):
        await gateway.upload_training_data(upload_request(b"abcd", size=10))
    assert os.listdir(storage.upload_dir) == []


async def test_upload_rejects_oversized_payload(backend, storage, tasks):
    gateway = make_gateway(backend, storage, tasks, max_upload_bytes=3)
    with pytest.raises(CallerError, match="too large"):
        await gateway.upload_training_data(upload_request(b"abcd"))


async def test_upload_rejects_invalid_base64(gateway):
    req = UploadTrainingDataRequest(file_name="a.wav", file_data="data:audio/wav;base64,@@@")
    with pytest.raises(CallerError):
        await gateway.upload_training_data(req)


async def test_upload_strips_directories_from_file_name(gateway, storage):
    record = await gateway.upload_training_data(upload_request(b"x", name="../../etc/passwd"))
    assert record.file_name == "passwd"
    assert os.path.dirname(record.storage_path) == storage.upload_dir


async def test_storage_failure_leaves_nothing_registered(gateway, storage, monkeypatch):
    import aiofiles

    def failing_open(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(aiofiles, "open", failing_open)
    with pytest.raises(StorageError, match="disk full"):
        await gateway.upload_training_data(upload_request(b"abc"))
    assert os.listdir(storage.upload_dir) == []


async def test_processing_complete_push_after_delay(gateway):
    sent = []

    async def notify(message):
        sent.append(message)
        return True

    record = await gateway.upload_training_data(upload_request(make_wav(0.5)))
    gateway.schedule_processing_complete("client-1", record, notify)
    await wait_until(lambda: sent)

    [message] = sent
    assert message.type == "processing-complete"
    assert message.request_id is None
    assert message.data["id"] == record.upload_id
    assert message.data["status"] == "ready"
    assert message.data["duration"] == pytest.approx(0.5)


async def test_prepare_training_is_permissive_by_default(gateway):
    req = StartTrainingRequest(model_name="m1", training_data_ids=["nope"], epochs=20)
    job = gateway.prepare_training("client-1", req)
    assert job.total_epochs == 20
    assert job.model_path.endswith(f"{job.job_id}.pth")


async def test_prepare_training_enforces_references_when_enabled(backend, storage, tasks):
    gateway = make_gateway(backend, storage, tasks, enforce_training_data_refs=True)
    record = await gateway.upload_training_data(upload_request(b"abc"))

    with pytest.raises(CallerError, match="nope"):
        gateway.prepare_training(
            "client-1",
            StartTrainingRequest(model_name="m1", training_data_ids=[record.upload_id, "nope"], epochs=10),
        )
    job = gateway.prepare_training(
        "client-1",
        StartTrainingRequest(model_name="m1", training_data_ids=[record.upload_id], epochs=10),
    )
    assert job.model_name == "m1"


async def test_mock_conversion_echoes_input(gateway):
    audio = "data:audio/wav;base64," + base64.b64encode(make_wav(1.0)).decode()
    result = await gateway.convert(ConvertVoiceRequest(input_audio=audio, model_id="model-1"))
    assert result["convertedAudio"] == audio
    assert result["modelId"] == "model-1"
    assert result["duration"] == pytest.approx(1.0)
    assert result["mock"] is True


async def test_remote_conversion(stub, backend, storage, tasks):
    gateway = make_gateway(backend, storage, tasks, mode="remote")
    result = await gateway.convert(ConvertVoiceRequest(input_audio="abc", model_id="model-1"))
    assert result == {"convertedAudio": "abc", "duration": 1.25, "modelId": "model-1"}
    assert stub.paths() == ["/convert"]


async def test_remote_conversion_failure_surfaces(stub, backend, storage, tasks):
    stub.conversion_up = False
    gateway = make_gateway(backend, storage, tasks, mode="remote")
    with pytest.raises(BackendError, match="Conversion backend error"):
        await gateway.convert(ConvertVoiceRequest(input_audio="abc", model_id="model-1"))


async def test_unknown_conversion_mode(backend, storage, tasks):
    with pytest.raises(ValueError):
        make_gateway(backend, storage, tasks, mode="quantum")


def test_validate_file_name_rejects_empty():
    with pytest.raises(CallerError):
        validate_file_name("dir/")
    with pytest.raises(CallerError):
        validate_file_name("bad\x00name.wav")


def test_decode_base64_payload_handles_data_uri():
    assert decode_base64_payload("data:text/plain;base64,aGk=") == b"hi"
    assert decode_base64_payload("aGk=") == b"hi"


def test_cleanup_removes_upload_dir(storage):
    storage.cleanup()
    assert not os.path.exists(storage.upload_dir)
    assert os.path.exists(storage.models_dir)
