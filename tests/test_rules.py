import tempfile
import unittest
from pathlib import Path

import pyslang

import svlint


def failures(rule, text):
    tree = pyslang.SyntaxTree.fromText(text)
    return [
        (node, result)
        for node in svlint.iter_nodes(tree.root)
        for result in [rule.check(tree, node)]
        if not result.passed
    ]


def lint_text(rule_names, text):
    config = svlint.Config()
    for name in rule_names:
        config.rules[name] = True
    tree = pyslang.SyntaxTree.fromText(text)
    parsed = svlint.ParsedSource(path=Path("source"), tree=tree, defines={})
    return svlint.lint_tree(svlint.Linter(config), parsed)


class IterNodesTests(unittest.TestCase):
    def test_preorder_includes_root_and_nested_nodes(self) -> None:
        tree = pyslang.SyntaxTree.fromText("module m; if (1) begin : g end endmodule\n")
        nodes = list(svlint.iter_nodes(tree.root))
        kinds = [node.kind for node in nodes]
        self.assertEqual(kinds[0], tree.root.kind)
        self.assertIn(pyslang.SyntaxKind.ModuleDeclaration, kinds)
        self.assertIn(pyslang.SyntaxKind.IfGenerate, kinds)
        self.assertLess(
            kinds.index(pyslang.SyntaxKind.ModuleDeclaration),
            kinds.index(pyslang.SyntaxKind.IfGenerate),
        )
        self.assertTrue(all(isinstance(node, pyslang.SyntaxNode) for node in nodes))


class GenerateIfWithLabelTests(unittest.TestCase):
    rule = svlint.GenerateIfWithLabel()

    def test_labelled_chain_passes(self) -> None:
        text = (
            "module m;\n"
            "  if (1) begin : g_a\n"
            "  end else if (0) begin : g_b\n"
            "  end else begin : g_c\n"
            "  end\n"
            "endmodule\n"
        )
        self.assertEqual(failures(self.rule, text), [])

    def test_prefix_label_passes(self) -> None:
        text = "module m;\n  if (1) g_a : begin\n  end\nendmodule\n"
        self.assertEqual(failures(self.rule, text), [])

    def test_missing_if_label_fails_on_construct(self) -> None:
        text = "module m;\n  if (1) begin\n  end\nendmodule\n"
        found = failures(self.rule, text)
        self.assertEqual(len(found), 1)
        node, result = found[0]
        self.assertEqual(node.kind, pyslang.SyntaxKind.IfGenerate)
        self.assertEqual(result, svlint.FAIL)

    def test_if_without_begin_fails(self) -> None:
        text = "module m;\n  wire w;\n  if (1) assign w = 1'b0;\nendmodule\n"
        self.assertEqual(len(failures(self.rule, text)), 1)

    def test_missing_else_label_is_located_at_else(self) -> None:
        text = (
            "module m;\n"
            "  if (1) begin : g_a\n"
            "  end else begin\n"
            "  end\n"
            "endmodule\n"
        )
        found = failures(self.rule, text)
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0][1].kind, "fail_locate")

        reported = lint_text(["generate_if_with_label"], text)
        self.assertEqual(len(reported), 1)
        self.assertEqual((reported[0].line, reported[0].column), (3, 7))
        self.assertEqual(reported[0].length, len("else"))

    def test_else_if_is_checked_by_nested_construct(self) -> None:
        text = (
            "module m;\n"
            "  if (1) begin : g_a\n"
            "  end else if (0) begin\n"
            "  end\n"
            "endmodule\n"
        )
        found = failures(self.rule, text)
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0][1], svlint.FAIL)

    def test_non_block_else_passes(self) -> None:
        text = (
            "module m;\n"
            "  wire w;\n"
            "  if (1) begin : g_a\n"
            "  end else assign w = 1'b0;\n"
            "endmodule\n"
        )
        self.assertEqual(failures(self.rule, text), [])


class GenerateForWithLabelTests(unittest.TestCase):
    rule = svlint.GenerateForWithLabel()

    def test_labelled_loop_passes(self) -> None:
        text = "module m;\n  for (genvar i = 0; i < 2; i++) begin : g\n  end\nendmodule\n"
        self.assertEqual(failures(self.rule, text), [])

    def test_unlabelled_loop_fails(self) -> None:
        text = "module m;\n  for (genvar i = 0; i < 2; i++) begin\n  end\nendmodule\n"
        found = failures(self.rule, text)
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0][0].kind, pyslang.SyntaxKind.LoopGenerate)


class ForbiddenFormTests(unittest.TestCase):
    def test_generate_region(self) -> None:
        rule = svlint.GenerateKeyword()
        self.assertEqual(len(failures(rule, "module m;\n  generate\n  endgenerate\nendmodule\n")), 1)
        self.assertEqual(failures(rule, "module m;\nendmodule\n"), [])

    def test_non_ansi_module(self) -> None:
        rule = svlint.NonAnsiModule()
        self.assertEqual(len(failures(rule, "module m (a);\n  input a;\nendmodule\n")), 1)
        self.assertEqual(failures(rule, "module m (input a);\nendmodule\n"), [])
        self.assertEqual(failures(rule, "module m;\nendmodule\n"), [])

    def test_unique_keyword_located_at_keyword(self) -> None:
        text = (
            "module m;\n"
            "  logic a, b;\n"
            "  always_comb begin\n"
            "    unique if (a) b = 1;\n"
            "    else b = 0;\n"
            "  end\n"
            "endmodule\n"
        )
        found = failures(svlint.UniqueKeyword(), text)
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0][1].kind, "fail_locate")
        self.assertEqual(failures(svlint.PriorityKeyword(), text), [])

        reported = lint_text(["unique_keyword"], text)
        self.assertEqual((reported[0].line, reported[0].column), (4, 5))

    def test_unique0_is_not_unique(self) -> None:
        text = (
            "module m;\n"
            "  logic a, b;\n"
            "  always_comb begin\n"
            "    unique0 case (a)\n"
            "      default: b = 1;\n"
            "    endcase\n"
            "  end\n"
            "endmodule\n"
        )
        self.assertEqual(failures(svlint.UniqueKeyword(), text), [])

    def test_priority_case(self) -> None:
        text = (
            "module m;\n"
            "  logic a, b;\n"
            "  always_comb begin\n"
            "    priority case (a)\n"
            "      default: b = 1;\n"
            "    endcase\n"
            "  end\n"
            "endmodule\n"
        )
        self.assertEqual(len(failures(svlint.PriorityKeyword(), text)), 1)
        self.assertEqual(failures(svlint.UniqueKeyword(), text), [])


class LintTreeTests(unittest.TestCase):
    def test_all_violations_reported_in_node_then_rule_order(self) -> None:
        text = (
            "module m (a);\n"
            "  input a;\n"
            "  generate\n"
            "    if (1) begin\n"
            "    end\n"
            "  endgenerate\n"
            "endmodule\n"
        )
        reported = lint_text(svlint.rule_names(), text)
        self.assertEqual(
            [failed.name for failed in reported],
            ["non_ansi_module", "generate_keyword", "generate_if_with_label"],
        )
        self.assertEqual([failed.line for failed in reported], [1, 3, 4])

    def test_failed_record_carries_rule_text(self) -> None:
        reported = lint_text(["generate_keyword"], "module m;\n  generate\n  endgenerate\nendmodule\n")
        self.assertEqual(len(reported), 1)
        failed = reported[0]
        self.assertEqual(failed.hint, "`generate`/`endgenerate` must be omitted")
        self.assertEqual(failed.reason, "")
        self.assertEqual((failed.line, failed.column), (2, 3))

    def test_included_file_with_same_basename_keeps_its_own_path(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "inc").mkdir()
            (root / "inc" / "top.sv").write_text(
                "module inner;\n  generate\n  endgenerate\nendmodule\n", encoding="utf-8"
            )
            top = root / "top.sv"
            top.write_text('`include "inc/top.sv"\nmodule top;\n  generate\n  endgenerate\nendmodule\n', encoding="utf-8")

            config = svlint.Config()
            config.rules["generate_keyword"] = True
            parsed = svlint.parse_sv(top, {}, [])
            reported = svlint.lint_tree(svlint.Linter(config), parsed)

        self.assertEqual(len(reported), 2)
        inner, outer = reported
        self.assertNotEqual(inner.path, str(top))
        self.assertTrue(inner.path.endswith("top.sv"))
        self.assertEqual(inner.line, 2)
        self.assertEqual((outer.path, outer.line), (str(top), 3))


if __name__ == "__main__":
    unittest.main()
