import importlib.util
import pathlib

ROOT = pathlib.Path(__file__).resolve().parents[1]


def _load(name):
    spec = importlib.util.spec_from_file_location(f'tools_{name}', ROOT / 'tools' / f'{name}.py')
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def test_serve_hands_the_app_to_uvicorn(monkeypatch):
    monkeypatch.delenv('HOST', raising=False)
    serve = _load('serve')
    calls = []
    monkeypatch.setattr(serve.uvicorn, 'run', lambda app, **kw: calls.append((app, kw)))
    assert serve.main(['--port', '9123']) == 0
    assert calls == [('calendarai.main:app', {'host': '127.0.0.1', 'port': 9123, 'reload': False,
                                              'log_level': 'info'})]
