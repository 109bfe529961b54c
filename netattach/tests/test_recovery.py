from __future__ import annotations

from kubernetes.client import ApiException

from netattach.src.kube import NAD_GROUP, NAD_PLURAL, NAD_VERSION
from netattach.src.recovery import (
    NetworkAttachmentDefinitionRecovery,
    RecoveryResult,
    recovered_copy,
)


def _not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


def test_referenced_and_absent_definition_is_recreated_once(context, make_pod, make_nad) -> None:
    context.pods.replace([make_pod("pod-a", networks="macvlan")])
    context.custom_api.get_namespaced_custom_object.side_effect = _not_found()
    deleted = make_nad()

    result = NetworkAttachmentDefinitionRecovery(context).handle_deletion(deleted)

    assert result == RecoveryResult(
        namespace="default", name="macvlan", referenced_by="default/pod-a", recreated=True
    )
    context.custom_api.get_namespaced_custom_object.assert_called_once_with(
        group=NAD_GROUP, version=NAD_VERSION, namespace="default", plural=NAD_PLURAL, name="macvlan"
    )
    context.custom_api.create_namespaced_custom_object.assert_called_once()
    create = context.custom_api.create_namespaced_custom_object.call_args
    assert create.kwargs["namespace"] == "default"
    assert create.kwargs["plural"] == NAD_PLURAL
    body = create.kwargs["body"]
    assert "resourceVersion" not in body["metadata"]
    assert body["metadata"]["name"] == "macvlan"
    assert body["metadata"]["labels"] == {"team": "net"}
    assert body["spec"] == deleted["spec"]


def test_definition_present_on_recheck_is_left_alone(context, make_pod, make_nad) -> None:
    context.pods.replace([make_pod("pod-a", networks="macvlan")])
    context.custom_api.get_namespaced_custom_object.return_value = make_nad()

    result = NetworkAttachmentDefinitionRecovery(context).handle_deletion(make_nad())

    assert result.referenced_by == "default/pod-a"
    assert not result.recreated
    context.custom_api.create_namespaced_custom_object.assert_not_called()


def test_unreferenced_definition_is_not_checked(context, make_pod, make_nad) -> None:
    context.pods.replace(
        [
            make_pod("pod-a", networks="sriov"),
            make_pod("pod-b", networks=None),
            make_pod("pod-c", namespace="other", networks="macvlan"),
        ]
    )

    result = NetworkAttachmentDefinitionRecovery(context).handle_deletion(make_nad())

    assert result.referenced_by is None
    context.custom_api.get_namespaced_custom_object.assert_not_called()
    context.custom_api.create_namespaced_custom_object.assert_not_called()


def test_null_networks_annotation_references_nothing(context, make_pod, make_nad) -> None:
    context.pods.replace([make_pod("pod-a", networks="null")])

    result = NetworkAttachmentDefinitionRecovery(context).handle_deletion(make_nad(name="null"))

    assert result.referenced_by is None
    context.custom_api.get_namespaced_custom_object.assert_not_called()


def test_cross_namespace_reference_is_honoured(context, make_pod, make_nad) -> None:
    context.pods.replace([make_pod("pod-c", namespace="apps", networks="infra/macvlan@net1")])
    context.custom_api.get_namespaced_custom_object.side_effect = _not_found()

    result = NetworkAttachmentDefinitionRecovery(context).handle_deletion(
        make_nad(namespace="infra")
    )

    assert result.referenced_by == "apps/pod-c"
    assert result.recreated


def test_json_selection_reference_is_honoured(context, make_pod, make_nad) -> None:
    context.pods.replace(
        [make_pod("pod-a", networks='[{"name":"macvlan","namespace":"default"}]')]
    )
    context.custom_api.get_namespaced_custom_object.side_effect = _not_found()

    result = NetworkAttachmentDefinitionRecovery(context).handle_deletion(make_nad())

    assert result.recreated


def test_unparseable_pod_annotation_is_skipped(context, make_pod, make_nad) -> None:
    context.pods.replace(
        [make_pod("pod-a", networks="a/b/c"), make_pod("pod-b", networks="macvlan")]
    )
    context.custom_api.get_namespaced_custom_object.side_effect = _not_found()

    result = NetworkAttachmentDefinitionRecovery(context).handle_deletion(make_nad())

    assert result.referenced_by == "default/pod-b"
    assert result.recreated


def test_first_referencing_pod_wins(context, make_pod, make_nad) -> None:
    context.pods.replace(
        [make_pod("pod-a", networks="macvlan"), make_pod("pod-b", networks="macvlan")]
    )
    context.custom_api.get_namespaced_custom_object.side_effect = _not_found()

    result = NetworkAttachmentDefinitionRecovery(context).handle_deletion(make_nad())

    assert result.referenced_by == "default/pod-a"
    context.custom_api.get_namespaced_custom_object.assert_called_once()
    context.custom_api.create_namespaced_custom_object.assert_called_once()


def test_recheck_error_other_than_not_found_skips_create(context, make_pod, make_nad) -> None:
    context.pods.replace([make_pod("pod-a", networks="macvlan")])
    context.custom_api.get_namespaced_custom_object.side_effect = ApiException(
        status=500, reason="boom"
    )

    result = NetworkAttachmentDefinitionRecovery(context).handle_deletion(make_nad())

    assert not result.recreated
    context.custom_api.create_namespaced_custom_object.assert_not_called()


def test_create_failure_is_reported_not_raised(context, make_pod, make_nad) -> None:
    context.pods.replace([make_pod("pod-a", networks="macvlan")])
    context.custom_api.get_namespaced_custom_object.side_effect = _not_found()
    context.custom_api.create_namespaced_custom_object.side_effect = ApiException(
        status=409, reason="AlreadyExists"
    )

    result = NetworkAttachmentDefinitionRecovery(context).handle_deletion(make_nad())

    assert result.referenced_by == "default/pod-a"
    assert not result.recreated


def test_recovered_copy_strips_server_fields_without_mutating(make_nad) -> None:
    original = make_nad()

    recovered = recovered_copy(original)

    assert set(recovered["metadata"]) == {"name", "namespace", "labels"}
    assert original["metadata"]["resourceVersion"] == "777"
    assert recovered["spec"] == original["spec"]
