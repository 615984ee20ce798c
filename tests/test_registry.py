from daebug.orchestrator.registry import PageRegistry, PageState, Realm, sanitize_name


def test_get_or_create_registers_idle_page():
    registry = PageRegistry()
    page = registry.get_or_create("test-page", "http://localhost:8080", now=10.0)
    assert page.name == "test-page"
    assert page.url == "http://localhost:8080"
    assert page.state is PageState.IDLE
    assert page.last_seen == 10.0


def test_repeat_polls_keep_original_url():
    registry = PageRegistry()
    registry.get_or_create("p", "http://first")
    again = registry.get_or_create("p", "http://second")
    assert again.url == "http://first"
    assert len(registry.list()) == 1


def test_update_state_refreshes_last_seen():
    registry = PageRegistry()
    registry.get_or_create("p", "http://x", now=1.0)
    registry.update_state("p", PageState.EXECUTING, now=5.0)
    page = registry.get("p")
    assert page.state is PageState.EXECUTING
    assert page.last_seen == 5.0


def test_update_state_unknown_page_is_noop():
    registry = PageRegistry()
    registry.update_state("ghost", PageState.FAILED)
    assert registry.get("ghost") is None


def test_evict_stale_pages():
    registry = PageRegistry()
    registry.get_or_create("old", "http://a", now=0.0)
    registry.get_or_create("new", "http://b", now=90.0)
    evicted = registry.evict_stale(now=100.0, ttl=50.0)
    assert [page.name for page in evicted] == ["old"]
    assert [page.name for page in registry.list()] == ["new"]


def test_touch_and_realm():
    registry = PageRegistry()
    registry.get_or_create("w", "http://w", Realm.WORKER, now=1.0)
    registry.touch("w", now=7.0)
    page = registry.get("w")
    assert page.realm is Realm.WORKER
    assert page.last_seen == 7.0


def test_sanitize_name_and_slug_lookup():
    assert sanitize_name("My Page: index.html") == "my-page-index-html"
    registry = PageRegistry()
    registry.get_or_create("My Page", "http://x")
    assert registry.find_by_slug("my-page").name == "My Page"
