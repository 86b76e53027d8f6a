"""
Tests for the deep_report.text helpers.
"""
from deep_report.text import content_tokens, domain_of, token_set_similarity, tokenize


def test_tokenize_lowercases_and_keeps_order():
    assert tokenize("Raft is USED in e-commerce, v2.0") == ["raft", "is", "used", "in", "e-commerce", "v2.0"]


def test_content_tokens_drop_stop_words():
    assert content_tokens("Raft is widely used in production") == ["raft", "widely", "used", "production"]


def test_similarity_identical_and_disjoint():
    assert token_set_similarity(tokenize("Raft is widely used"), tokenize("raft IS widely used")) == 1.0
    assert token_set_similarity(tokenize("Raft is widely used"), tokenize("Paxos predates it")) == 0.0


def test_similarity_empty_is_zero():
    assert token_set_similarity([], ["a"]) == 0.0


def test_domain_of_strips_www_port_and_credentials():
    assert domain_of("https://www.Example.com/path") == "example.com"
    assert domain_of("http://user:pw@sre.google:8443/book") == "sre.google"
    assert domain_of("not a url") == ""
