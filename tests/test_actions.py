from eksconverge.actions import Action, ActionLog


def test_action_str() -> None:
    assert str(Action("create", "eks:cluster/demo-cluster")) == "create eks:cluster/demo-cluster"
    assert (
        str(Action("create", "eks:cluster/demo-cluster", "kubernetes 1.29", pending=True))
        == "would create eks:cluster/demo-cluster (kubernetes 1.29)"
    )


def test_record_in_apply_mode() -> None:
    log = ActionLog()

    assert log.record("attach", "iam:role/demo", "arn:aws:iam::aws:policy/AmazonEKSClusterPolicy")
    assert log.changed
    assert not log.actions[0].pending


def test_record_in_verify_mode() -> None:
    log = ActionLog(apply=False)

    assert not log.record("create", "iam:role/demo")
    assert log.actions == [Action("create", "iam:role/demo", pending=True)]


def test_warn_does_not_count_as_change() -> None:
    log = ActionLog()
    log.warn("IAM policy differs")

    assert not log.changed
    assert log.warnings == ["IAM policy differs"]
