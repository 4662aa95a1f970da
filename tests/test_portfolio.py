from __future__ import annotations

from pathlib import Path

import yaml

from portfolio_chat.portfolio import CONTEXT_HEADER, PortfolioEnricher

DATA = {
    "owner_text": "Owner builds things.",
    "categories": {
        "skills": [
            {"title": "Python", "content": "FastAPI services", "tags": ["backend"]},
            {"title": "Go", "content": "CLI tools", "tags": "cli, tooling"},
        ],
        "projects": [{"title": "Chat", "content": "Portfolio assistant", "tags": ["ai"]}],
        "experience": [{"title": "Engineer", "content": "Built APIs"}],
        "education": ["BSc Computer Science"],
        "about": [{"title": "Me", "content": "Curious person"}],
        "hobbies": [{"title": "Chess", "content": "ignored"}],
    },
}


def test_keyword_routing_selects_category():
    enr = PortfolioEnricher(data=DATA)
    ctx = enr.enrich("What skills do you have?")
    assert ctx.startswith("Owner builds things.")
    assert CONTEXT_HEADER in ctx
    assert "- Python: FastAPI services" in ctx
    assert "- Go: CLI tools" in ctx
    assert "Portfolio assistant" not in ctx


def test_no_match_takes_first_item_of_each_category():
    enr = PortfolioEnricher(data=DATA)
    items = enr.select("hello")
    assert [i.title for i in items] == ["Python", "Chat", "Engineer", "BSc Computer Science", "Me"]


def test_context_is_capped():
    enr = PortfolioEnricher(data=DATA, max_items=2)
    assert len(enr.select("skills and projects and experience")) == 2


def test_unknown_category_ignored_and_tags_split():
    enr = PortfolioEnricher(data=DATA)
    assert enr.category("hobbies") == []
    assert enr.category("SKILLS")[1].tags == ["cli", "tooling"]
    assert enr.categories() == ["skills", "projects", "experience", "education", "about"]


def test_search_matches_any_term():
    enr = PortfolioEnricher(data=DATA)
    assert [i.title for i in enr.search("fastapi")] == ["Python"]
    assert [i.title for i in enr.search("portfolio AI")] == ["Chat"]
    assert [i.title for i in enr.search("python redis?")] == ["Python"]
    assert [i.title for i in enr.search("Python, portfolio")] == ["Python", "Chat"]
    assert enr.search("   ") == []
    assert enr.search(" ?!., ") == []


def test_loads_yaml_file(tmp_path: Path):
    path = tmp_path / "portfolio.yaml"
    path.write_text(yaml.safe_dump(DATA), encoding="utf-8")
    enr = PortfolioEnricher(path)
    assert len(enr.category("skills")) == 2


def test_missing_or_broken_file_gives_empty_context(tmp_path: Path):
    assert PortfolioEnricher(tmp_path / "missing.yaml").enrich("skills") == ""
    bad = tmp_path / "bad.yaml"
    bad.write_text("categories: [unclosed", encoding="utf-8")
    assert PortfolioEnricher(bad).enrich("anything") == ""


def test_shipped_portfolio_loads(project_root: Path):
    enr = PortfolioEnricher(project_root / "config" / "portfolio.yaml")
    assert enr.category("skills")
    assert CONTEXT_HEADER in enr.enrich("Tell me about your projects")
