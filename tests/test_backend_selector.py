"""Tests for backend selection policy."""

import itertools

import pytest

from vllm_image_builder.models.build import CapabilitySnapshot
from vllm_image_builder.models.common import Backend
from vllm_image_builder.services.backend_selector import (
    NoBackendAvailable,
    select_backend,
    selection_warning,
)

BUILDAH = Backend.BUILDAH
DOCKER = Backend.DOCKER
NONE = NoBackendAvailable


def _snapshot(buildah: bool, docker: bool, userns: bool, container: bool = False) -> CapabilitySnapshot:
    return CapabilitySnapshot(
        has_daemonless_builder=buildah,
        has_daemon_builder=docker,
        running_in_container=container,
        has_user_namespace=userns,
    )


class TestSelectionPolicy:
    """Table-driven tests for the selection policy."""

    @pytest.mark.parametrize(
        ("buildah", "docker", "userns", "expected"),
        [
            # Daemonless preferred with user namespaces, regardless of docker
            (True, True, True, BUILDAH),
            (True, False, True, BUILDAH),
            # Without user namespaces the daemon wins
            (True, True, False, DOCKER),
            (False, True, False, DOCKER),
            (False, True, True, DOCKER),
            # Buildah as a last resort
            (True, False, False, BUILDAH),
            # Nothing available
            (False, False, True, NONE),
            (False, False, False, NONE),
        ],
    )
    def test_policy_table(self, buildah: bool, docker: bool, userns: bool, expected):
        result = select_backend(_snapshot(buildah, docker, userns))
        if expected is NONE:
            assert isinstance(result, NoBackendAvailable)
        else:
            assert result == expected

    def test_override_wins(self):
        """Test that an override applies even when the policy prefers another backend."""
        snapshot = _snapshot(buildah=True, docker=True, userns=True)
        assert select_backend(snapshot, override=DOCKER) == DOCKER

    def test_override_ignored_when_excluded(self):
        """Test that an excluded override falls through to the policy."""
        snapshot = _snapshot(buildah=True, docker=True, userns=True)
        assert select_backend(snapshot, override=BUILDAH, excluded={BUILDAH}) == DOCKER

    def test_excluded_preferred_backend(self):
        snapshot = _snapshot(buildah=True, docker=True, userns=True)
        assert select_backend(snapshot, excluded={BUILDAH}) == DOCKER

    def test_excluded_daemon_falls_back_to_buildah_without_userns(self):
        snapshot = _snapshot(buildah=True, docker=True, userns=False)
        assert select_backend(snapshot, excluded={DOCKER}) == BUILDAH

    def test_all_excluded(self):
        """Test that the reason names the excluded backends."""
        snapshot = _snapshot(buildah=True, docker=True, userns=True)
        result = select_backend(snapshot, excluded={BUILDAH, DOCKER})
        assert isinstance(result, NoBackendAvailable)
        assert "buildah" in result.reason
        assert "docker" in result.reason


class TestSelectionPurity:
    """The selector depends on nothing but its arguments."""

    def test_repeated_calls_agree(self):
        for buildah, docker, userns, container in itertools.product([True, False], repeat=4):
            snapshot = _snapshot(buildah, docker, userns, container)
            for override in (None, BUILDAH, DOCKER):
                for excluded in (frozenset(), frozenset({BUILDAH}), frozenset({DOCKER})):
                    first = select_backend(snapshot, override, excluded)
                    second = select_backend(snapshot, override, excluded)
                    assert first == second

    def test_does_not_mutate_excluded(self):
        snapshot = _snapshot(buildah=True, docker=True, userns=True)
        excluded = {BUILDAH}
        select_backend(snapshot, excluded=excluded)
        assert excluded == {BUILDAH}


class TestSelectionWarning:
    """Tests for selection warnings."""

    def test_buildah_without_userns(self):
        warning = selection_warning(_snapshot(buildah=True, docker=False, userns=False), BUILDAH)
        assert warning is not None
        assert "user namespace" in warning

    def test_forced_buildah_missing(self):
        warning = selection_warning(_snapshot(buildah=False, docker=True, userns=True), BUILDAH)
        assert warning is not None
        assert "not found" in warning

    def test_forced_docker_missing(self):
        warning = selection_warning(_snapshot(buildah=True, docker=False, userns=True), DOCKER)
        assert warning is not None

    def test_no_warning_for_healthy_choice(self):
        assert selection_warning(_snapshot(buildah=True, docker=True, userns=True), BUILDAH) is None
