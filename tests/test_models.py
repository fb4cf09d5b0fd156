import json

import pytest
from pydantic import ValidationError

from mediajobs.models import CostLedgerEntry, Job, JobStatus, JobType
from mediajobs.schemas import JobResponse, validate_job_input


@pytest.fixture
def db_session(session_factory):
    """Session on the shared in-memory database."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_job(**overrides):
    values = {
        "type": JobType.TRAINING.value,
        "input_payload": json.dumps({"images_zip_url": "https://example.com/set.zip", "trigger_word": "ohwx"}),
    }
    values.update(overrides)
    return Job(**values)


class TestJobModel:
    def test_create_job(self, db_session):
        job = make_job()
        db_session.add(job)
        db_session.commit()

        assert job.id is not None
        assert len(job.id) == 36
        assert job.status == "pending"
        assert job.created_at is not None

    def test_job_defaults(self, db_session):
        job = make_job()
        db_session.add(job)
        db_session.commit()

        assert job.progress == 0
        assert job.cost_cents == 0
        assert job.external_request_id is None
        assert job.output_payload is None
        assert job.error_message is None
        assert job.get_output_payload() is None
        assert job.get_progress_log() == []

    def test_job_repr(self, db_session):
        job = make_job()
        db_session.add(job)
        db_session.commit()

        repr_str = repr(job)
        assert "Job" in repr_str
        assert str(job.id) in repr_str
        assert job.status in repr_str

    def test_job_to_dict(self, db_session):
        job = make_job(progress_log=json.dumps([{"ts": "2026-01-01T00:00:00", "message": "Queued"}]))
        db_session.add(job)
        db_session.commit()

        job_dict = job.to_dict()

        assert job_dict["id"] == job.id
        assert job_dict["type"] == "training"
        assert job_dict["input_payload"]["trigger_word"] == "ohwx"
        assert job_dict["progress_log"][0]["message"] == "Queued"
        assert job_dict["started_at"] is None
        assert isinstance(job_dict["created_at"], str)

    def test_response_schema_from_job(self, db_session):
        job = make_job()
        db_session.add(job)
        db_session.commit()

        response = JobResponse.from_job(job)
        assert response.id == job.id
        assert response.input_payload["images_zip_url"] == "https://example.com/set.zip"

    def test_cost_ledger_entry(self, db_session):
        entry = CostLedgerEntry(job_id="job-1", job_type="frame_swap", cost_cents=6)
        db_session.add(entry)
        db_session.commit()

        assert entry.id is not None
        assert "cost_cents=6" in repr(entry)


class TestJobEnums:
    def test_terminal_statuses(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.QUEUED.is_terminal
        assert not JobStatus.PROCESSING.is_terminal

    def test_partition_per_type(self):
        assert JobType.MEDIA_TRANSFORM.partition == "media-transform"
        assert JobType.IDENTITY_GENERATION.partition == "identity-generation"
        assert JobType.IMAGE_GENERATION.partition == "image-generation"
        assert JobType.VARIANT.partition == "variant"
        assert len({t.partition for t in JobType}) == len(JobType)


class TestInputValidation:
    def test_defaults_applied(self):
        payload = validate_job_input(
            JobType.MEDIA_TRANSFORM,
            {"video_url": "https://example.com/v.mp4", "face_image_url": "https://example.com/f.png"},
        )
        assert payload["resolution"] == "720p"
        assert payload["duration_seconds"] == 5.0

    def test_rejects_bad_url(self):
        with pytest.raises(ValidationError):
            validate_job_input(
                JobType.MEDIA_TRANSFORM,
                {"video_url": "ftp://example.com/v.mp4", "face_image_url": "https://example.com/f.png"},
            )

    def test_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            validate_job_input(
                JobType.TRAINING,
                {"images_zip_url": "https://example.com/set.zip", "trigger_word": "ohwx", "epochs": 3},
            )

    def test_rejects_empty_frames(self):
        with pytest.raises(ValidationError):
            validate_job_input(JobType.FRAME_SWAP, {"frame_urls": [], "face_image_url": "https://example.com/f.png"})

    def test_rejects_media_transform_gender(self):
        with pytest.raises(ValidationError):
            validate_job_input(
                JobType.MEDIA_TRANSFORM,
                {
                    "video_url": "https://example.com/v.mp4",
                    "face_image_url": "https://example.com/f.png",
                    "gender": "male",
                },
            )

    def test_frame_swap_gender_default(self):
        payload = validate_job_input(
            JobType.FRAME_SWAP,
            {"frame_urls": ["https://example.com/0.png"], "face_image_url": "https://example.com/f.png"},
        )
        assert payload["gender"] == "female"


class TestImageGenerationInput:
    LORA = {"lora_weights_url": "https://example.com/lora.safetensors", "lora_trigger_word": "ohwx"}

    def test_text_to_image_defaults(self):
        payload = validate_job_input(JobType.IMAGE_GENERATION, {**self.LORA, "prompt": "on a beach"})
        assert payload["mode"] == "text-to-image"
        assert payload["aspect_ratio"] == "1:1"
        assert payload["num_images"] == 1
        assert payload["lora_strength"] == 0.8

    def test_text_to_image_requires_prompt(self):
        with pytest.raises(ValidationError, match="requires a prompt"):
            validate_job_input(JobType.IMAGE_GENERATION, self.LORA)

    def test_face_swap_requires_lora(self):
        with pytest.raises(ValidationError, match="face-swap requires"):
            validate_job_input(JobType.IMAGE_GENERATION, {"mode": "face-swap", "lora_trigger_word": "ohwx"})

    def test_diagram_requires_reference(self):
        with pytest.raises(ValidationError, match="reference_image_url"):
            validate_job_input(JobType.IMAGE_GENERATION, {"mode": "character-diagram-swap"})

    def test_diagram_without_lora(self):
        payload = validate_job_input(
            JobType.IMAGE_GENERATION,
            {"mode": "character-diagram-swap", "reference_image_url": "https://example.com/sheet.png"},
        )
        assert payload["lora_weights_url"] is None

    @pytest.mark.parametrize("num_images", [0, 5])
    def test_num_images_bounds(self, num_images):
        with pytest.raises(ValidationError):
            validate_job_input(
                JobType.IMAGE_GENERATION, {**self.LORA, "prompt": "x", "num_images": num_images}
            )


class TestVariantInput:
    def test_defaults(self):
        payload = validate_job_input(JobType.VARIANT, {"video_url": "https://example.com/v.mp4"})
        assert payload["hook_position"] == "bottom"
        assert payload["hook_duration_seconds"] == 3.0
        assert payload["variant_index"] == 0
        assert payload["audio_url"] is None

    def test_rejects_unsafe_batch_id(self):
        with pytest.raises(ValidationError):
            validate_job_input(JobType.VARIANT, {"video_url": "https://example.com/v.mp4", "batch_id": "../etc"})

    def test_rejects_long_hook(self):
        with pytest.raises(ValidationError):
            validate_job_input(JobType.VARIANT, {"video_url": "https://example.com/v.mp4", "hook_text": "x" * 201})
