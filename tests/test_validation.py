"""Tests for Ingress and ProxyGroup precondition checks."""

import pytest

from vipingress.errors import IngressValidationError
from vipingress.models import ANNOTATION_SERVICE_NAME, ANNOTATION_TAGS, FINALIZER
from vipingress.validation import (
    check_tag,
    find_duplicate,
    is_well_formed,
    parse_tags,
    proxy_group_ready,
    validate_ingress,
)

from fakes import make_ingress, make_proxy_group


def held(ingress, service_name):
    """Mark ``ingress`` as provisioned under ``service_name``."""
    ingress["metadata"]["finalizers"] = [FINALIZER]
    ingress["metadata"]["annotations"][ANNOTATION_SERVICE_NAME] = service_name
    return ingress


@pytest.fixture
def base_ingress():
    return make_ingress(host="test", backend_port=None)


@pytest.fixture
def ready_pg():
    return make_proxy_group()


class TestValidateIngress:
    """Each check in order, with the message users see on the Ingress."""

    def test_valid_ingress_with_hostname(self, ready_pg):
        validate_ingress(make_ingress(host="test.example.com"), ready_pg, [])

    def test_valid_ingress_with_default_hostname(self, base_ingress, ready_pg):
        validate_ingress(base_ingress, ready_pg, [])

    def test_invalid_tags(self, ready_pg):
        ing = make_ingress(host=None, annotations={ANNOTATION_TAGS: "tag:invalid!"})

        with pytest.raises(IngressValidationError) as exc_info:
            validate_ingress(ing, ready_pg, [])
        assert str(exc_info.value) == (
            'tailscale.com/tags annotation contains invalid tag "tag:invalid!": '
            "tag names can only contain numbers, letters, or dashes"
        )
        assert not exc_info.value.is_proxy_group_problem

    def test_multiple_tls_entries(self, ready_pg):
        ing = make_ingress(tls=[{"hosts": ["test1.example.com"]}, {"hosts": ["test2.example.com"]}])

        with pytest.raises(IngressValidationError) as exc_info:
            validate_ingress(ing, ready_pg, [])
        assert str(exc_info.value) == (
            "Ingress contains invalid TLS block [['test1.example.com'], ['test2.example.com']]: "
            "only a single TLS entry with a single host is allowed"
        )

    def test_multiple_hosts_in_tls_entry(self, ready_pg):
        ing = make_ingress(tls=[{"hosts": ["test1.example.com", "test2.example.com"]}])

        with pytest.raises(IngressValidationError, match="only a single TLS entry with a single host is allowed"):
            validate_ingress(ing, ready_pg, [])

    def test_wrong_proxy_group_type(self, base_ingress):
        with pytest.raises(IngressValidationError) as exc_info:
            validate_ingress(base_ingress, make_proxy_group(pg_type="foo"), [])
        assert str(exc_info.value) == 'ProxyGroup "test-pg" is of type "foo" but must be of type "ingress"'
        assert exc_info.value.is_proxy_group_problem

    def test_proxy_group_not_ready(self, base_ingress):
        with pytest.raises(IngressValidationError, match='ProxyGroup "test-pg" is not ready'):
            validate_ingress(base_ingress, make_proxy_group(ready=False), [])

    def test_proxy_group_missing(self, base_ingress):
        with pytest.raises(IngressValidationError, match='ProxyGroup "test-pg" does not exist') as exc_info:
            validate_ingress(base_ingress, None, [])
        assert exc_info.value.is_proxy_group_problem

    def test_duplicate_hostname(self, base_ingress, ready_pg):
        existing = make_ingress(name="existing-ingress", host="test",
                                creationTimestamp="2024-01-01T00:00:00Z")
        base_ingress["metadata"]["creationTimestamp"] = "2024-01-02T00:00:00Z"

        with pytest.raises(IngressValidationError) as exc_info:
            validate_ingress(base_ingress, ready_pg, [existing, base_ingress])
        assert str(exc_info.value) == (
            'found duplicate Ingress "existing-ingress" for hostname "test" - '
            "multiple Ingresses for the same hostname in the same cluster are not allowed"
        )

    def test_duplicate_in_other_namespace_is_qualified(self, base_ingress, ready_pg):
        existing = make_ingress(name="first", namespace="team-a", host="test.example.com",
                                creationTimestamp="2024-01-01T00:00:00Z")
        base_ingress["metadata"]["creationTimestamp"] = "2024-01-02T00:00:00Z"

        with pytest.raises(IngressValidationError, match='duplicate Ingress "team-a/first"'):
            validate_ingress(base_ingress, ready_pg, [existing])

    def test_proxy_group_checked_before_ingress(self):
        ing = make_ingress(annotations={ANNOTATION_TAGS: "bad"})

        with pytest.raises(IngressValidationError, match="does not exist"):
            validate_ingress(ing, None, [])


class TestFindDuplicate:
    """A sibling holding the name wins, otherwise the oldest live, well-formed one."""

    def test_younger_sibling_is_not_a_duplicate(self):
        older = make_ingress(name="a", creationTimestamp="2024-01-01T00:00:00Z")
        younger = make_ingress(name="b", creationTimestamp="2024-01-02T00:00:00Z")

        assert find_duplicate(older, [older, younger]) is None
        assert find_duplicate(younger, [older, younger])["metadata"]["name"] == "a"

    def test_same_timestamp_breaks_ties_by_name(self):
        a = make_ingress(name="a", creationTimestamp="2024-01-01T00:00:00Z")
        b = make_ingress(name="b", creationTimestamp="2024-01-01T00:00:00Z")

        assert find_duplicate(a, [a, b]) is None
        assert find_duplicate(b, [a, b]) is a

    def test_deleting_sibling_is_ignored(self):
        older = make_ingress(name="a", creationTimestamp="2024-01-01T00:00:00Z",
                             deletionTimestamp="2024-02-01T00:00:00Z")
        ing = make_ingress(name="b", creationTimestamp="2024-01-02T00:00:00Z")

        assert find_duplicate(ing, [older]) is None

    def test_malformed_sibling_is_ignored(self):
        older = make_ingress(name="a", creationTimestamp="2024-01-01T00:00:00Z",
                             annotations={ANNOTATION_TAGS: "nope"})
        ing = make_ingress(name="b", creationTimestamp="2024-01-02T00:00:00Z")

        assert find_duplicate(ing, [older]) is None

    def test_different_label_is_not_a_duplicate(self):
        older = make_ingress(name="a", host="other", creationTimestamp="2024-01-01T00:00:00Z")
        ing = make_ingress(name="b", creationTimestamp="2024-01-02T00:00:00Z")

        assert find_duplicate(ing, [older]) is None

    def test_holder_of_the_name_beats_an_older_sibling(self):
        older = make_ingress(name="a", creationTimestamp="2024-01-01T00:00:00Z")
        holder = held(make_ingress(name="b", creationTimestamp="2024-01-02T00:00:00Z"), "svc:my-svc")

        assert find_duplicate(older, [older, holder]) is holder
        assert find_duplicate(holder, [older, holder]) is None

    def test_name_held_for_another_service_does_not_count(self):
        older = held(make_ingress(name="a", creationTimestamp="2024-01-01T00:00:00Z"), "svc:alpha")
        holder = held(make_ingress(name="b", creationTimestamp="2024-01-02T00:00:00Z"), "svc:my-svc")

        assert find_duplicate(older, [older, holder]) is holder
        assert find_duplicate(holder, [older, holder]) is None


class TestTags:

    @pytest.mark.parametrize("tag,problem", [
        ("tag:k8s", None),
        ("tag:web-01", None),
        ("k8s", "tags must start with 'tag:'"),
        ("tag:", "tag names must not be empty"),
        ("tag:1web", "tag names must start with a letter, after 'tag:'"),
        ("tag:we_b", "tag names can only contain numbers, letters, or dashes"),
    ])
    def test_check_tag(self, tag, problem):
        assert check_tag(tag) == problem

    def test_parse_tags(self):
        assert parse_tags(make_ingress()) is None
        assert parse_tags(make_ingress(annotations={ANNOTATION_TAGS: "tag:a, tag:b,,"})) == ["tag:a", "tag:b"]

    def test_is_well_formed(self):
        assert is_well_formed(make_ingress())
        assert not is_well_formed(make_ingress(tls=[{"hosts": []}]))


class TestProxyGroupReady:

    def test_stale_condition_is_not_ready(self):
        pg = make_proxy_group()
        pg["metadata"]["generation"] = 2

        assert not proxy_group_ready(pg)

    def test_no_conditions(self):
        assert not proxy_group_ready({"metadata": {"generation": 1}})
