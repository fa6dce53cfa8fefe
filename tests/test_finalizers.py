import pytest

import capa_iam
import capa_iam.cancel
import capa_iam.finalizers
import capa_iam.k8s
from capa_iam.errors import FinalizerRetryExceededError, ObjectNotFoundError, ReconcileCancelledError

KIND = capa_iam.k8s.AWS_CLUSTER
FINALIZER = capa_iam.finalizer_name(capa_iam.RoleType.CONTROL_PLANE)


@pytest.fixture
def cluster(store, make_obj):
    return store.add(KIND, make_obj("cluster1", finalizers=["other/finalizer"]))


class TestAddFinalizer:
    def test_adds_and_keeps_existing(self, store, cluster):
        stored = capa_iam.finalizers.add_finalizer(store, KIND, cluster, FINALIZER)

        assert stored["metadata"]["finalizers"] == ["other/finalizer", FINALIZER]
        assert store.find(KIND, "cluster1", "org-test")["metadata"]["finalizers"] == ["other/finalizer", FINALIZER]

    def test_present_finalizer_needs_no_write(self, store, cluster):
        stored = capa_iam.finalizers.add_finalizer(store, KIND, cluster, FINALIZER)

        capa_iam.finalizers.add_finalizer(store, KIND, stored, FINALIZER)

        assert store.replace_calls == ["cluster1"]

    def test_retries_after_conflicts(self, store, cluster):
        store.conflicts["cluster1"] = 2

        capa_iam.finalizers.add_finalizer(store, KIND, cluster, FINALIZER)

        assert len(store.replace_calls) == 3
        assert FINALIZER in store.find(KIND, "cluster1", "org-test")["metadata"]["finalizers"]

    def test_stale_copy_is_refreshed(self, store, cluster):
        current = store.find(KIND, "cluster1", "org-test")
        current["metadata"]["labels"] = {"changed": "true"}
        store.replace(KIND, current)
        store.replace_calls.clear()

        capa_iam.finalizers.add_finalizer(store, KIND, cluster, FINALIZER)

        stored = store.find(KIND, "cluster1", "org-test")
        assert len(store.replace_calls) == 2
        assert stored["metadata"]["labels"] == {"changed": "true"}
        assert FINALIZER in stored["metadata"]["finalizers"]

    @pytest.mark.parametrize("max_retries", [1, 3, 5])
    def test_gives_up_after_max_retries(self, store, cluster, max_retries):
        """Test a conflict on every write stops after exactly max_retries attempts."""
        store.conflicts["cluster1"] = 100

        with pytest.raises(FinalizerRetryExceededError) as e:
            capa_iam.finalizers.add_finalizer(store, KIND, cluster, FINALIZER, max_retries=max_retries)

        assert len(store.replace_calls) == max_retries
        assert e.value.retryable

    def test_rejects_non_positive_retries(self, store, cluster):
        with pytest.raises(ValueError, match="at least 1"):
            capa_iam.finalizers.add_finalizer(store, KIND, cluster, FINALIZER, max_retries=0)

    def test_missing_object(self, store, make_obj):
        with pytest.raises(ObjectNotFoundError):
            capa_iam.finalizers.add_finalizer(store, KIND, make_obj("gone"), FINALIZER)

    def test_cancelled(self, store, cluster):
        cancel = capa_iam.cancel.CancelToken()
        cancel.cancel()

        with pytest.raises(ReconcileCancelledError):
            capa_iam.finalizers.add_finalizer(store, KIND, cluster, FINALIZER, cancel=cancel)
        assert store.replace_calls == []


class TestRemoveFinalizer:
    def test_removes_only_ours(self, store, cluster):
        stored = capa_iam.finalizers.add_finalizer(store, KIND, cluster, FINALIZER)

        stored = capa_iam.finalizers.remove_finalizer(store, KIND, stored, FINALIZER)

        assert stored["metadata"]["finalizers"] == ["other/finalizer"]

    def test_last_finalizer_releases_deleting_object(self, store, make_obj):
        obj = store.add(KIND, make_obj("cluster2", finalizers=[FINALIZER], deleting=True))

        capa_iam.finalizers.remove_finalizer(store, KIND, obj, FINALIZER)

        assert store.find(KIND, "cluster2", "org-test") is None

    def test_vanished_object_is_done(self, store, make_obj):
        gone = make_obj("gone", finalizers=[FINALIZER])

        assert capa_iam.finalizers.remove_finalizer(store, KIND, gone, FINALIZER) is None

    def test_object_vanishing_between_attempts(self, store, make_obj):
        obj = store.add(KIND, make_obj("cluster2", finalizers=[FINALIZER]))
        store.conflicts["cluster2"] = 1
        del store.objects[(KIND.kind, "org-test", "cluster2")]

        assert capa_iam.finalizers.remove_finalizer(store, KIND, obj, FINALIZER) is None
