import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from voice_pipeline.calibration_manager import CALIBRATION_PHRASES, CalibrationManager, analyze_samples
from voice_pipeline.config import CalibrationConfig
from voice_pipeline.errors import (
    InvalidImportData,
    NoCalibrationSamples,
    ProfileNotFound,
    SessionFull,
    SessionNotActive,
)
from voice_pipeline.models import CalibrationSample, Language, SessionStatus
from voice_pipeline.profile_store import InMemoryProfileStore


def sample(expected, recognized=None, frequency=200.0, volume=0.2, duration=2.0):
    return {
        "text": expected,
        "expected_text": expected,
        "recognized_text": expected if recognized is None else recognized,
        "frequency": frequency,
        "volume": volume,
        "duration": duration,
    }


@pytest.fixture
def manager(store):
    return CalibrationManager(CalibrationConfig(min_samples=2, max_samples=5, accuracy_threshold=0.8), store)


@pytest.fixture
def profile(manager):
    return manager.create_profile("Rahim", "en")


def test_start_requires_existing_profile(manager):
    with pytest.raises(ProfileNotFound):
        manager.start_calibration("missing")


def test_session_steps_default_and_cap(manager, profile):
    assert manager.start_calibration(profile.id).total_steps == 2
    assert manager.start_calibration(profile.id, total_steps=50).total_steps == 5
    assert manager.start_calibration(profile.id, total_steps=0).total_steps == 1


def test_progress_advances_with_each_sample(manager, profile):
    session = manager.start_calibration(profile.id, total_steps=4)

    updated = manager.add_calibration_sample(session.id, sample("I am a farmer"))
    assert updated.current_step == 1
    assert updated.progress == 25.0
    assert updated.samples[0].id

    updated = manager.add_calibration_sample(session.id, sample("Time to plant the seeds"))
    assert updated.current_step == 2
    assert updated.progress == 50.0


def test_session_rejects_samples_beyond_total_steps(manager, profile):
    session = manager.start_calibration(profile.id)
    manager.add_calibration_sample(session.id, sample("one"))
    manager.add_calibration_sample(session.id, sample("two"))

    with pytest.raises(SessionFull):
        manager.add_calibration_sample(session.id, sample("three"))


def test_concurrent_samples_never_overfill_a_session(manager, profile):
    session = manager.start_calibration(profile.id, total_steps=5)
    barrier = threading.Barrier(12)
    rejected = []

    def add(index):
        barrier.wait()
        try:
            manager.add_calibration_sample(session.id, sample(f"phrase {index}"))
        except SessionFull as e:
            rejected.append(e)

    with ThreadPoolExecutor(max_workers=12) as pool:
        list(pool.map(add, range(12)))

    final = manager.get_calibration_session(session.id)
    assert len(final.samples) == 5
    assert final.current_step == 5
    assert final.progress == 100.0
    assert len(rejected) == 7


def test_perfect_recognition_gives_full_accuracy(manager, profile):
    session = manager.start_calibration(profile.id)
    for phrase in CALIBRATION_PHRASES[Language.ENGLISH][:2]:
        manager.add_calibration_sample(session.id, sample(phrase))

    updated = manager.complete_calibration(session.id)
    assert updated.recognition_accuracy == 1.0
    assert updated.sample_count == 2
    assert manager.get_calibration_session(session.id).status == SessionStatus.COMPLETED


def test_unrecognized_speech_gives_zero_accuracy(manager, profile):
    session = manager.start_calibration(profile.id)
    manager.add_calibration_sample(session.id, sample("I am a farmer", recognized=""))
    manager.add_calibration_sample(session.id, sample("Harvest time has arrived", recognized="hello"))

    assert manager.complete_calibration(session.id).recognition_accuracy == 0.0


def test_sample_analysis():
    samples = [
        CalibrationSample(id="a", **sample("I am a farmer", frequency=200.0, volume=0.2)),
        CalibrationSample(id="b", **sample("Time to plant seeds", recognized="nothing", frequency=300.0, volume=0.4)),
    ]

    data, accuracy = analyze_samples(samples, 0.8)

    assert accuracy == 0.5
    assert data.average_volume == pytest.approx(0.3)
    assert (data.frequency_range.min, data.frequency_range.max) == (200.0, 300.0)
    assert data.speech_rate == pytest.approx(120.0)
    assert data.pause_duration == pytest.approx(2.0)
    assert data.noise_floor == pytest.approx(0.2)
    pitch = data.voice_characteristics.pitch
    assert (pitch.min, pitch.max, pitch.average) == (200.0, 300.0, 250.0)
    assert data.voice_characteristics.formants == pytest.approx([200.0, 300.0, 450.0])
    assert data.voice_characteristics.spectral_centroid == pytest.approx(160 / 0.6)


def test_pitch_ignores_out_of_range_frequencies():
    samples = [CalibrationSample(id="a", **sample("low", frequency=50.0))]
    data, _ = analyze_samples(samples, 0.8)
    assert data.voice_characteristics.pitch.average == 0.0


def test_completed_or_cancelled_sessions_are_closed(manager, profile):
    session = manager.start_calibration(profile.id)
    manager.add_calibration_sample(session.id, sample("I am a farmer"))
    manager.complete_calibration(session.id)

    with pytest.raises(SessionNotActive):
        manager.complete_calibration(session.id)
    with pytest.raises(SessionNotActive):
        manager.add_calibration_sample(session.id, sample("again"))

    cancelled = manager.start_calibration(profile.id)
    assert manager.cancel_calibration(cancelled.id)
    assert not manager.cancel_calibration(cancelled.id)
    assert not manager.cancel_calibration("missing")
    with pytest.raises(SessionNotActive):
        manager.complete_calibration(cancelled.id)


def test_oldest_finished_sessions_are_forgotten(store):
    manager = CalibrationManager(CalibrationConfig(max_finished_sessions=2), store)
    profile = manager.create_profile("Karim", "bn")
    active = manager.start_calibration(profile.id)
    finished = [manager.start_calibration(profile.id) for _ in range(3)]
    for session in finished:
        manager.cancel_calibration(session.id)

    assert manager.get_calibration_session(finished[0].id) is None
    assert manager.get_calibration_session(finished[1].id).status == SessionStatus.CANCELLED
    assert manager.get_calibration_session(finished[2].id).status == SessionStatus.CANCELLED
    assert manager.get_calibration_session(active.id).status == SessionStatus.ACTIVE
    with pytest.raises(SessionNotActive):
        manager.add_calibration_sample(finished[0].id, sample("gone"))


def test_completing_without_samples_fails(manager, profile):
    session = manager.start_calibration(profile.id)
    with pytest.raises(NoCalibrationSamples):
        manager.complete_calibration(session.id)
    assert manager.get_calibration_session(session.id).status == SessionStatus.ACTIVE


def test_optimal_settings_need_calibration(manager, profile):
    assert manager.get_optimal_settings(profile.id) is None
    assert manager.get_optimal_settings("missing") is None

    session = manager.start_calibration(profile.id)
    manager.add_calibration_sample(session.id, sample("I am a farmer", frequency=200.0, volume=0.2))
    manager.add_calibration_sample(session.id, sample("Time to plant seeds", frequency=300.0, volume=0.4))
    manager.complete_calibration(session.id)

    settings = manager.get_optimal_settings(profile.id)
    assert settings.speech_recognition["lang"] == "en-US"
    assert settings.speech_synthesis == pytest.approx({"rate": 2.0, "pitch": 2.5, "volume": 0.6})
    assert settings.voice_activity == pytest.approx({
        "threshold": 0.4,
        "min_speech_duration": 1000.0,
        "max_silence_duration": 4000.0,
    })


def test_profile_update_and_delete(manager, profile):
    assert manager.update_profile(profile.id, {"name": "Karim"})
    assert manager.get_profile(profile.id).name == "Karim"
    assert not manager.update_profile("missing", {"name": "x"})

    assert manager.delete_profile(profile.id)
    assert manager.get_profile(profile.id) is None
    assert not manager.delete_profile(profile.id)


def test_export_and_import_assign_new_id(manager, profile):
    exported = manager.export_profile(profile.id)
    assert json.loads(exported)["name"] == "Rahim"

    imported = manager.import_profile(exported)
    assert imported.id != profile.id
    assert imported.name == "Rahim"
    assert len(manager.get_all_profiles()) == 2


@pytest.mark.parametrize("payload", [
    "not json",
    "[1, 2]",
    {"name": "No id", "language": "en"},
    {"id": "", "name": "Blank id", "language": "en"},
    {"id": "x", "name": "Bad language", "language": "fr"},
])
def test_import_rejects_malformed_payloads(manager, payload):
    with pytest.raises(InvalidImportData):
        manager.import_profile(payload)
    assert manager.get_all_profiles() == []


def test_export_unknown_profile(manager):
    with pytest.raises(ProfileNotFound):
        manager.export_profile("missing")


def test_profiles_reload_from_store(store):
    config = CalibrationConfig(min_samples=1)
    first = CalibrationManager(config, store)
    created = first.create_profile("Amina", Language.BANGLA)

    second = CalibrationManager(config, store)
    assert second.get_profile(created.id).name == "Amina"


def test_auto_save_can_be_disabled(store):
    manager = CalibrationManager(CalibrationConfig(auto_save=False), store)
    manager.create_profile("Amina", "bn")
    assert store.load(CalibrationManager.PROFILES_KEY) is None

    assert manager.save_profiles()
    assert store.load(CalibrationManager.PROFILES_KEY) is not None


def test_phrases_and_recommendations(manager):
    assert manager.get_calibration_phrases("bn", 3) == CALIBRATION_PHRASES[Language.BANGLA][:3]
    assert len(manager.get_calibration_phrases("en")) == 10
    assert len(manager.get_calibration_phrases("en", 50)) == 10

    recommended = manager.get_recommended_calibration_settings("en")
    assert recommended["sample_count"] == 2
    assert len(recommended["phrases"]) == 2


def test_calibration_stats(manager):
    manager.create_profile("A", "bn")
    manager.create_profile("B", "en")
    stats = manager.get_calibration_stats()

    assert stats["total_profiles"] == 2
    assert stats["profiles_by_language"] == {"bn": 1, "en": 1}
    assert stats["average_accuracy"] == 0.0
    assert stats["total_samples"] == 0
