"""
Unit tests for the model registry.
"""

from unittest.mock import AsyncMock

import pytest

from coffee_diagnosis.core.errors import (
    DuplicateModelVersionError,
    InactiveModelError,
    ModelNotFoundError,
    ModelRegistrationError,
)
from coffee_diagnosis.models.diagnosis_models import Feedback, ModelKind, Prediction
from coffee_diagnosis.services.artifact_store import compute_checksum
from coffee_diagnosis.services.model_registry import ModelRegistry, SwitchResult
from coffee_diagnosis.services.result_cache import ResultCache

from conftest import add_image, register_model


class TestRegistration:
    """Tests for register()"""

    def test_duplicate_version_rejected(self, registry):
        """Registering (x, v1) twice fails and leaves exactly one row"""
        register_model(registry, "x", "v1", activate=False)

        with pytest.raises(DuplicateModelVersionError) as exc_info:
            register_model(registry, "x", "v1", activate=False)

        assert exc_info.value.model_name == "x"
        assert registry.count_versions("x", "v1") == 1

    def test_new_version_is_inactive(self, registry):
        record = register_model(registry, "coffee_mlp", "v1.0", activate=False)

        assert record.is_active is False
        assert record.is_production is False
        assert registry.get_active(ModelKind.SYMPTOM) is None

    def test_checksum_and_size_computed_from_file(self, registry):
        record = register_model(registry, "coffee_mlp", "v1.0", data=b"weights", activate=False)

        assert record.file_checksum == compute_checksum(b"weights")
        assert record.file_size_bytes == len(b"weights")

    @pytest.mark.parametrize("accuracy", [-0.1, 1.5])
    def test_accuracy_outside_unit_interval_rejected(self, registry, accuracy):
        with pytest.raises(ModelRegistrationError):
            registry.register("m", "v1", ModelKind.SYMPTOM, "m.onnx", accuracy, "dataset_v1")

    @pytest.mark.parametrize("field,kwargs", [
        ("file_path", {"file_path": ""}),
        ("training_dataset_version", {"training_dataset_version": ""}),
        ("accuracy", {"accuracy": None}),
    ])
    def test_required_fields(self, registry, field, kwargs):
        params = dict(
            model_name="m", version="v1", model_type=ModelKind.IMAGE,
            file_path="m.onnx", accuracy=0.9, training_dataset_version="dataset_v1"
        )
        params.update(kwargs)

        with pytest.raises(ModelRegistrationError, match=field):
            registry.register(**params)

    def test_unknown_model_type_rejected(self, registry):
        with pytest.raises(ModelRegistrationError):
            registry.register("m", "v1", "transformer", "m.onnx", 0.9, "dataset_v1")


class TestSwitching:
    """Tests for switch_active()"""

    def test_switch_deactivates_other_versions_of_type(self, registry):
        register_model(registry, "coffee_mlp", "v1.0")
        register_model(registry, "coffee_mlp", "v2.0", activate=False)

        assert registry.switch_active("coffee_mlp", "v2.0") == SwitchResult.SUCCESS

        assert registry.get_version("coffee_mlp", "v1.0").is_active is False
        active = registry.get_active(ModelKind.SYMPTOM)
        assert active.version == "v2.0"
        assert active.deployed_at is not None

    def test_switch_leaves_other_types_alone(self, registry):
        register_model(registry, "coffee_resnet50", "v1.1", model_type=ModelKind.IMAGE)
        register_model(registry, "coffee_mlp", "v1.0")

        assert registry.get_active(ModelKind.IMAGE).model_name == "coffee_resnet50"
        assert registry.get_active(ModelKind.SYMPTOM).model_name == "coffee_mlp"

    def test_switch_unknown_version(self, registry):
        assert registry.switch_active("nope", "v0") == SwitchResult.NOT_FOUND

    def test_switch_to_already_active(self, registry):
        register_model(registry, "coffee_mlp", "v1.0")

        assert registry.switch_active("coffee_mlp", "v1.0") == SwitchResult.ALREADY_ACTIVE

    def test_switch_clears_production_flags(self, registry):
        register_model(registry, "coffee_mlp", "v1.0")
        registry.promote_to_production("coffee_mlp", "v1.0")
        register_model(registry, "coffee_mlp", "v2.0")

        assert registry.get_version("coffee_mlp", "v1.0").is_production is False

    def test_listeners_run_after_commit(self, registry):
        seen = []
        registry.add_listener(lambda kind, record: seen.append(
            (kind, record.version_key, registry.get_active(kind).version_key)
        ))

        register_model(registry, "coffee_mlp", "v1.0")

        assert seen == [(ModelKind.SYMPTOM, "coffee_mlp:v1.0", "coffee_mlp:v1.0")]

    def test_failing_listener_does_not_undo_switch(self, registry):
        def broken(kind, record):
            raise RuntimeError("listener exploded")
        registry.add_listener(broken)

        register_model(registry, "coffee_mlp", "v1.0")

        assert registry.get_active(ModelKind.SYMPTOM).version == "v1.0"

    def test_get_active_filters_by_name(self, registry):
        register_model(registry, "coffee_mlp", "v1.0")

        assert registry.get_active(ModelKind.SYMPTOM, "coffee_mlp").version == "v1.0"
        assert registry.get_active(ModelKind.SYMPTOM, "other_mlp") is None

    def test_deactivate(self, registry):
        register_model(registry, "coffee_mlp", "v1.0")

        assert registry.deactivate("coffee_mlp", "v1.0") is True
        assert registry.get_active(ModelKind.SYMPTOM) is None
        assert registry.deactivate("coffee_mlp", "v9") is False

    def test_deactivate_notifies_listeners(self, registry):
        register_model(registry, "coffee_mlp", "v1.0")
        seen = []
        registry.add_listener(lambda kind, record: seen.append((kind, record.version_key, record.is_active)))

        registry.deactivate("coffee_mlp", "v1.0")

        assert seen == [(ModelKind.SYMPTOM, "coffee_mlp:v1.0", False)]

    def test_rollback_to_previous_deployment(self, registry):
        register_model(registry, "coffee_mlp", "v1.0")
        register_model(registry, "coffee_mlp", "v2.0")

        restored = registry.rollback(ModelKind.SYMPTOM)

        assert restored.version == "v1.0"
        assert registry.get_active(ModelKind.SYMPTOM).version == "v1.0"

    def test_rollback_without_history(self, registry):
        register_model(registry, "coffee_mlp", "v1.0", activate=False)

        assert registry.rollback(ModelKind.SYMPTOM) is None


class TestProduction:
    """Tests for promote_to_production()"""

    def test_promote_requires_active(self, registry):
        register_model(registry, "coffee_mlp", "v1.0", activate=False)

        with pytest.raises(InactiveModelError):
            registry.promote_to_production("coffee_mlp", "v1.0")

    def test_promote_unknown_version(self, registry):
        with pytest.raises(ModelNotFoundError):
            registry.promote_to_production("coffee_mlp", "v404")

    def test_promote_sets_single_production_flag(self, registry):
        register_model(registry, "coffee_resnet50", "v1.1", model_type=ModelKind.IMAGE)
        registry.promote_to_production("coffee_resnet50", "v1.1")
        register_model(registry, "coffee_mlp", "v1.0")

        promoted = registry.promote_to_production("coffee_mlp", "v1.0")

        assert promoted.is_production is True
        # Production flag is per model type
        assert registry.get_version("coffee_resnet50", "v1.1").is_production is True


class TestCatalog:
    """Listing, validation, statistics and health"""

    def test_list_versions_paginates(self, registry):
        for i in range(5):
            register_model(registry, "coffee_mlp", f"v{i}", activate=False)
        register_model(registry, "coffee_resnet50", "v1.1", model_type=ModelKind.IMAGE, activate=False)

        page = registry.list_versions(ModelKind.SYMPTOM, page=2, page_size=2)

        assert page.total == 5
        assert page.total_pages == 3
        assert len(page.items) == 2
        assert registry.list_versions().total == 6

    def test_validate_artifact(self, registry):
        registry.artifact_store.write_bytes("good.onnx", b"x")
        registry.artifact_store.write_bytes("empty.onnx", b"")
        registry.artifact_store.write_bytes("notes.txt", b"x")

        assert registry.validate_artifact("good.onnx") == (True, None)
        assert registry.validate_artifact("empty.onnx")[0] is False
        assert "extension" in registry.validate_artifact("notes.txt")[1]
        assert "not found" in registry.validate_artifact("missing.onnx")[1]
        assert registry.validate_artifact("")[0] is False

    def test_is_healthy(self, registry):
        assert registry.is_healthy() is False

        register_model(registry, "coffee_mlp", "v1.0")
        assert registry.is_healthy() is True

        registry.artifact_store.resolve("coffee_mlp_v1.0.onnx").unlink()
        assert registry.is_healthy() is False

    @pytest.mark.asyncio
    async def test_statistics_are_computed_and_cached(self, session_factory, artifact_store):
        cache = ResultCache()
        registry = ModelRegistry(session_factory, artifact_store, result_cache=cache)
        register_model(registry, "coffee_resnet50", "v1.1", model_type=ModelKind.IMAGE)
        image_id = add_image(session_factory)

        db = session_factory()
        try:
            first = Prediction(image_id=image_id, disease_name="Rust", confidence=0.9,
                               model_version="coffee_resnet50:v1.1")
            second = Prediction(image_id=image_id, disease_name="Rust", confidence=0.7,
                                model_version="coffee_resnet50:v1.1")
            db.add_all([first, second])
            db.flush()
            db.add_all([
                Feedback(prediction_id=first.id, user_id="u1", rating=5),
                Feedback(prediction_id=second.id, user_id="u2", rating=2),
            ])
            db.commit()
        finally:
            db.close()

        stats = await registry.get_statistics("coffee_resnet50", "v1.1")

        assert stats.total_predictions == 2
        assert stats.average_confidence == pytest.approx(0.8)
        assert stats.average_rating == pytest.approx(3.5)
        assert stats.is_active is True
        assert await cache.get_model_stats("coffee_resnet50:v1.1") == stats

    @pytest.mark.asyncio
    async def test_statistics_for_unknown_version(self, registry):
        assert await registry.get_statistics("nope", "v0") is None


class TestStatisticsInvalidation:
    """Cached statistics follow activation changes"""

    @pytest.fixture
    def cached_registry(self, session_factory, artifact_store):
        return ModelRegistry(session_factory, artifact_store, result_cache=ResultCache(redis_url=""))

    @pytest.mark.asyncio
    async def test_switch_refreshes_previous_version(self, cached_registry):
        register_model(cached_registry, "coffee_mlp", "v1.0")
        register_model(cached_registry, "coffee_mlp", "v2.0", activate=False)
        assert (await cached_registry.get_statistics("coffee_mlp", "v1.0")).is_active is True
        assert (await cached_registry.get_statistics("coffee_mlp", "v2.0")).is_active is False

        cached_registry.switch_active("coffee_mlp", "v2.0")

        assert (await cached_registry.get_statistics("coffee_mlp", "v1.0")).is_active is False
        assert (await cached_registry.get_statistics("coffee_mlp", "v2.0")).is_active is True

    @pytest.mark.asyncio
    async def test_promotion_refreshes_production_flags(self, cached_registry):
        register_model(cached_registry, "coffee_mlp", "v1.0")
        cached_registry.promote_to_production("coffee_mlp", "v1.0")
        register_model(cached_registry, "coffee_mlp", "v2.0")
        assert (await cached_registry.get_statistics("coffee_mlp", "v1.0")).is_production is False
        assert (await cached_registry.get_statistics("coffee_mlp", "v2.0")).is_production is False

        cached_registry.promote_to_production("coffee_mlp", "v2.0")

        assert (await cached_registry.get_statistics("coffee_mlp", "v2.0")).is_production is True

    @pytest.mark.asyncio
    async def test_deactivate_refreshes_statistics(self, cached_registry):
        register_model(cached_registry, "coffee_mlp", "v1.0")
        cached_registry.promote_to_production("coffee_mlp", "v1.0")
        assert (await cached_registry.get_statistics("coffee_mlp", "v1.0")).is_production is True

        cached_registry.deactivate("coffee_mlp", "v1.0")

        stats = await cached_registry.get_statistics("coffee_mlp", "v1.0")
        assert stats.is_active is False
        assert stats.is_production is False

    @pytest.mark.asyncio
    async def test_redis_entries_dropped_on_next_read(self, session_factory, artifact_store):
        redis_client = AsyncMock()
        redis_client.get.return_value = None
        registry = ModelRegistry(
            session_factory, artifact_store, result_cache=ResultCache(redis_client=redis_client)
        )
        register_model(registry, "coffee_mlp", "v1.0")
        register_model(registry, "coffee_mlp", "v2.0")

        await registry.get_statistics("coffee_mlp", "v2.0")

        deleted = {call.args[0] for call in redis_client.delete.await_args_list}
        assert deleted == {"model_stats:coffee_mlp:v1.0", "model_stats:coffee_mlp:v2.0"}
