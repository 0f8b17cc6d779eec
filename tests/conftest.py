import logging

import pytest

pytest_plugins = [
    'fixtures.config',
    'fixtures.store',
    'fixtures.packet_filter',
]


@pytest.fixture(autouse=True)
def _check_no_errors(request, caplog):
    yield
    if request.node.get_closest_marker('allow_error_logs'):
        return

    for when in ('setup', 'call'):
        messages = [x.message for x in caplog.get_records(when) if x.levelno >= logging.ERROR]
        if messages:
            pytest.fail(f'error messages encountered during testing: {messages!r}')
