"""
Integration tests for fruit_classifier/pipeline.py on small generated image trees.
"""

import threading

import pytest
import torch

from conftest import build_fruit_tree, make_config
from fruit_classifier.data import scan_dataset
from fruit_classifier.errors import EmptyDatasetError, ImageLoadError, TrainingCancelledError, UnknownLabelError
from fruit_classifier.evaluate import evaluate_predictions
from fruit_classifier.model import FeatureExtractor, LinearClassifier, LinearHeadTrainer
from fruit_classifier.pipeline import ClassificationPipeline, FruitModel, PredictionRecord


class MeanColorExtractor:
    """Feature extractor that averages each colour channel."""

    feature_dim = 3
    spec = {"name": "mean_color", "feature_dim": 3}

    def extract(self, images: torch.Tensor) -> torch.Tensor:
        return images.mean(dim=(2, 3))


class RecordingTrainer:
    def __init__(self):
        self.calls = []

    def train(self, features, labels, num_classes):
        self.calls.append((features, labels, num_classes))
        return LinearClassifier(features.shape[1], num_classes)


# ============================================================================
# fit
# ============================================================================


@pytest.mark.unit
def test_fit_rejects_empty_dataset(fast_config):
    with pytest.raises(EmptyDatasetError):
        ClassificationPipeline(fast_config).fit([])


@pytest.mark.unit
def test_fit_rejects_tree_with_only_empty_label_dirs(tmp_path):
    for label in ("apple", "pear"):
        (tmp_path / "train" / label).mkdir(parents=True)
    config = make_config(tmp_path)

    with pytest.raises(EmptyDatasetError):
        ClassificationPipeline(config).fit(scan_dataset(config.train_dir))


@pytest.mark.integration
def test_fit_returns_model_with_codec_and_schema(trained):
    _, model, _, _ = trained

    assert isinstance(model, FruitModel)
    assert model.labels == ("apple", "pear", "strawberry")
    assert model.schema["feature_dim"] == 512
    assert model.schema["extractor"] == {"name": "resnet18", "pretrained": False, "feature_dim": 512}
    assert model.schema["output"]["scores"] == 3
    assert model.preprocess["image_size"] == 32


@pytest.mark.integration
def test_fit_aborts_on_corrupt_image(fast_config, fruit_dirs):
    train_root, _ = fruit_dirs
    (train_root / "pear" / "broken.png").write_bytes(b"not a png")

    with pytest.raises(ImageLoadError):
        ClassificationPipeline(fast_config).fit(scan_dataset(train_root))


@pytest.mark.integration
def test_fit_is_reproducible_with_fixed_seed(fast_config, fruit_dirs):
    samples = scan_dataset(fruit_dirs[0])

    first = ClassificationPipeline(fast_config).fit(samples)
    second = ClassificationPipeline(fast_config).fit(samples)

    for key, value in first.classifier.state_dict().items():
        assert torch.allclose(value, second.classifier.state_dict()[key])
    for key, value in first.extractor.state_dict().items():
        assert torch.equal(value, second.extractor.state_dict()[key])


@pytest.mark.integration
def test_fit_can_be_cancelled(fast_config, fruit_dirs):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(TrainingCancelledError):
        ClassificationPipeline(fast_config).fit(scan_dataset(fruit_dirs[0]), cancel=cancel)


@pytest.mark.unit
def test_extractor_without_spec_is_not_a_feature_extractor():
    class Anonymous:
        feature_dim = 3

        def extract(self, images):
            return images.mean(dim=(2, 3))

    assert isinstance(MeanColorExtractor(), FeatureExtractor)
    assert not isinstance(Anonymous(), FeatureExtractor)


@pytest.mark.integration
def test_fit_passes_encoded_labels_to_trainer(fast_config, fruit_dirs):
    trainer = RecordingTrainer()
    pipeline = ClassificationPipeline(fast_config, extractor=MeanColorExtractor(), trainer=trainer)
    samples = scan_dataset(fruit_dirs[0])

    model = pipeline.fit(samples)

    features, labels, num_classes = trainer.calls[0]
    assert features.shape == (30, 3)
    assert num_classes == 3
    assert labels.tolist() == [model.codec.encode(sample.label) for sample in samples]
    assert model.schema["extractor"] == MeanColorExtractor.spec


# ============================================================================
# predict
# ============================================================================


@pytest.mark.integration
def test_predict_returns_one_record_per_sample_in_order(trained):
    pipeline, model, test_samples, _ = trained

    records = pipeline.predict(model, test_samples)

    assert [record.sample for record in records] == test_samples
    for record in records:
        assert isinstance(record, PredictionRecord)
        assert record.predicted_label in model.labels
        assert len(record.scores) == 3
        assert sum(record.scores) == pytest.approx(1.0, abs=1e-5)
        assert record.predicted_label == model.labels[record.scores.index(record.confidence)]


@pytest.mark.integration
def test_predict_on_empty_dataset_returns_nothing(trained):
    pipeline, model, _, _ = trained
    assert pipeline.predict(model, []) == []


@pytest.mark.integration
def test_predict_aborts_on_corrupt_image(trained, tmp_path):
    pipeline, model, _, _ = trained
    broken = tmp_path / "apple" / "broken.png"
    broken.parent.mkdir()
    broken.write_bytes(b"garbage")

    with pytest.raises(ImageLoadError):
        pipeline.predict(model, scan_dataset(tmp_path))


@pytest.mark.integration
def test_predict_image_uses_parent_folder_as_label(trained):
    pipeline, model, test_samples, _ = trained

    record = pipeline.predict_image(model, test_samples[0].image_path)

    assert record.sample == test_samples[0]
    assert record.predicted_label in model.labels


@pytest.mark.integration
def test_injected_extractor_runs_end_to_end(fast_config, fruit_dirs):
    trainer = LinearHeadTrainer(epochs=40, learning_rate=0.1, batch_size=8, seed=1)
    pipeline = ClassificationPipeline(fast_config, extractor=MeanColorExtractor(), trainer=trainer)

    model = pipeline.fit(scan_dataset(fruit_dirs[0]))
    test_samples = scan_dataset(fruit_dirs[1])
    records = pipeline.predict(model, test_samples)

    assert [record.predicted_label for record in records] == [sample.label for sample in test_samples]


# ============================================================================
# Full scenario
# ============================================================================


@pytest.mark.integration
def test_three_fruit_scenario_confusion_matrix(trained):
    pipeline, model, test_samples, _ = trained

    predictions = pipeline.predict(model, test_samples)
    metrics = evaluate_predictions(predictions, test_samples, model.codec)

    assert metrics.confusion_matrix.shape == (3, 3)
    assert metrics.labels == model.codec.labels == ("apple", "pear", "strawberry")
    assert metrics.confusion_matrix.sum(axis=1).tolist() == [3, 3, 3]
    assert 0.0 <= metrics.macro_accuracy <= 1.0
    assert metrics.log_loss >= 0.0


@pytest.mark.integration
def test_unseen_test_label_fails_evaluation(trained, tmp_path):
    pipeline, model, _, _ = trained
    test_root = build_fruit_tree(tmp_path / "test", per_label=1, colors={"banana": (240, 220, 40)})
    samples = scan_dataset(test_root)

    predictions = pipeline.predict(model, samples)

    with pytest.raises(UnknownLabelError):
        evaluate_predictions(predictions, samples, model.codec)
