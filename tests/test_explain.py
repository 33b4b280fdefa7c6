from vecagg.explain import (
    AnalyzeOutputNode,
    ExplainOutputNode,
    NodeKind,
    SampleStats,
    analyze_query,
    explain_vector,
)


class _Op:
    def __init__(self, name, children=(), stats=None, kind=NodeKind.OTHER):
        self._name = name
        self._children = list(children)
        self._stats = stats
        self.node_kind = kind

    def samples(self):
        return self._stats

    def explain(self):
        return self._children

    def __str__(self):
        return self._name


class _Plain:
    def __init__(self, name, children=()):
        self._name = name
        self._children = list(children)

    def explain(self):
        return self._children

    def __str__(self):
        return self._name


def test_explain_vector_mirrors_tree():
    tree = _Plain("[root]", [_Plain("[left]"), _Plain("[right]", [_Plain("[leaf]")])])
    assert explain_vector(tree) == ExplainOutputNode(
        "[root]",
        [
            ExplainOutputNode("[left]"),
            ExplainOutputNode("[right]", [ExplainOutputNode("[leaf]")]),
        ],
    )


def test_explain_leaf_has_no_children():
    assert explain_vector(_Plain("[noArgFunction]")).children == []


def test_analyze_skips_unobservable_children():
    observed = _Op("[child]", stats=SampleStats())
    root = _Op("[root]", [observed, _Plain("[plain]")], stats=SampleStats())
    node = analyze_query(root)
    assert [c.telemetry for c in node.children] == [observed]


def test_child_samples_roll_up():
    child = _Op("[child]", stats=SampleStats(10, 7, [4, 6]))
    root = _Op("[root]", [child], stats=SampleStats(0, 0, [0, 0]))
    node = analyze_query(root)
    assert node.total_samples() == 10
    assert node.total_samples_per_step() == [4, 6]
    assert node.peak_samples() == 7


def test_total_is_sum_of_children_totals():
    children = [
        _Op("[a]", stats=SampleStats(3, 1, [1, 2])),
        _Op("[b]", stats=SampleStats(5, 4, [2, 3])),
    ]
    root = _Op("[root]", children, stats=SampleStats(0, 0, [0, 0]))
    node = analyze_query(root)
    child_nodes = node.children
    assert node.total_samples() == sum(c.total_samples() for c in child_nodes)
    assert sum(node.total_samples_per_step()) == node.total_samples()
    assert node.peak_samples() == max(c.peak_samples() for c in child_nodes)


def test_subquery_does_not_add_child_samples():
    child = _Op("[child]", stats=SampleStats(50, 9, [25, 25]))
    root = _Op("[sub]", [child], stats=SampleStats(2, 1, [1, 1]), kind=NodeKind.SUBQUERY)
    node = analyze_query(root)
    assert node.total_samples() == 2
    assert node.total_samples_per_step() == [1, 1]
    assert node.peak_samples() == 9


def test_step_invariant_repeats_child_total_per_step():
    child = _Op("[child]", stats=SampleStats(5, 2, [5]))
    root = _Op(
        "[inv]", [child], stats=SampleStats(0, 0, [0, 0, 0]), kind=NodeKind.STEP_INVARIANT
    )
    node = analyze_query(root)
    assert node.total_samples_per_step() == [5, 5, 5]
    assert node.total_samples() == 3 * 5


def test_node_without_stats_reports_children_only():
    child = _Op("[child]", stats=SampleStats(8, 3, [8]))
    node = AnalyzeOutputNode(_Op("[root]"), [analyze_query(child)])
    assert node.total_samples() == 8
    assert node.total_samples_per_step() == [8]


def test_aggregation_is_computed_once():
    stats = SampleStats(4, 2, [4])
    node = analyze_query(_Op("[leaf]", stats=stats))
    first = node.total_samples()
    stats.total_samples = 100
    assert node.total_samples() == first == 4