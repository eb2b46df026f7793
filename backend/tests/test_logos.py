import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from gymdesk.main import app
from gymdesk.utils.logos import save_logo, sniff_logo

client = TestClient(app)


def _png(size=(32, 16), color=(200, 30, 30)):
    buf = io.BytesIO()
    Image.new('RGB', size, color).save(buf, format='PNG')
    return buf.getvalue()


def test_sniff_logo_accepts_images_only():
    assert sniff_logo(_png()) == 'png'
    with pytest.raises(ValueError):
        sniff_logo(b'')
    with pytest.raises(ValueError):
        sniff_logo(b'%PDF-1.4 definitely not an image')


def test_save_logo_is_content_addressed():
    payload = _png(color=(1, 2, 3))
    first = save_logo(7, payload)
    second = save_logo(7, payload)
    assert first == second
    assert first.exists()
    assert first.name.startswith('gym-7-') and first.suffix == '.png'
    assert save_logo(7, _png(color=(9, 9, 9))) != first


def test_logo_upload_and_download(new_gym):
    headers, _ = new_gym()
    assert client.get('/api/gym/logo', headers=headers).status_code == 404
    r = client.post('/api/gym/logo', files={'file': ('logo.png', _png(), 'image/png')}, headers=headers)
    assert r.status_code == 200
    assert r.json()['logo_path'].endswith('.png')

    got = client.get('/api/gym/logo', headers=headers)
    assert got.status_code == 200
    assert got.headers['content-type'] == 'image/png'
    assert got.content == _png()

    bad = client.post('/api/gym/logo', files={'file': ('logo.png', b'not really a png', 'image/png')}, headers=headers)
    assert bad.status_code == 400
