pytest_plugins = [
    "tests.fixtures.settings_fixtures",
    "tests.fixtures.store_fixtures",
    "tests.fixtures.chat_fixtures",
]
