import pytest

import multibar
from multibar import RenderConfig, UIMode


def test_defaults():
    config = RenderConfig()
    assert config.ui_mode == UIMode.RESPONSIVE
    assert not config.quiet
    assert not config.no_color
    assert config.debug_output == ''
    assert config.grace_period == 0.05
    assert config.fast_interval == 0.1
    assert config.slow_interval == 1.0


def test_ui_mode_strings_are_decoded():
    assert RenderConfig(ui_mode='compact').ui_mode == UIMode.COMPACT
    assert RenderConfig(ui_mode=' Full ').ui_mode == UIMode.FULL
    assert UIMode.decode('responsive') == UIMode.RESPONSIVE
    assert UIMode.decode(UIMode.FULL) == UIMode.FULL


def test_unknown_ui_mode_is_rejected():
    with pytest.raises(ValueError, match='not a valid UI mode'):
        RenderConfig(ui_mode='fancy')


@pytest.mark.parametrize('field', ['fast_interval', 'slow_interval', 'resize_poll_interval'])
def test_intervals_must_be_positive(field):
    with pytest.raises(ValueError):
        RenderConfig(**{field: 0})


def test_grace_period_must_not_be_negative():
    with pytest.raises(ValueError):
        RenderConfig(grace_period=-1)
    assert RenderConfig(grace_period=0).grace_period == 0


def test_from_env(monkeypatch):
    monkeypatch.setattr(multibar, '_detect_terminal_capability',
                        lambda *args, **kwargs: multibar.TerminalCapability.BASIC)
    config = RenderConfig.from_env({
        'MULTIBAR_QUIET': 'true',
        'MULTIBAR_UI_MODE': 'compact',
        'MULTIBAR_DEBUG_OUTPUT': 'headers',
        'MULTIBAR_GRACE_PERIOD': '0.5',
    })
    assert config.quiet
    assert not config.no_color
    assert config.ui_mode == UIMode.COMPACT
    assert config.debug_output == 'headers'
    assert config.grace_period == 0.5


def test_from_env_no_color(monkeypatch):
    monkeypatch.setattr(multibar, '_detect_terminal_capability',
                        lambda *args, **kwargs: multibar.TerminalCapability.ADVANCED)
    assert RenderConfig.from_env({'NO_COLOR': ''}).no_color
    assert RenderConfig.from_env({'MULTIBAR_NO_COLOR': '1'}).no_color
    assert not RenderConfig.from_env({'MULTIBAR_NO_COLOR': '0'}).no_color


def test_from_env_minimal_terminal_disables_color():
    config = RenderConfig.from_env({'TERM': 'dumb'})
    assert config.no_color


def test_from_env_overrides_win(monkeypatch):
    monkeypatch.setattr(multibar, '_detect_terminal_capability',
                        lambda *args, **kwargs: multibar.TerminalCapability.BASIC)
    config = RenderConfig.from_env({'MULTIBAR_UI_MODE': 'compact'}, ui_mode='full', quiet=True)
    assert config.ui_mode == UIMode.FULL
    assert config.quiet
