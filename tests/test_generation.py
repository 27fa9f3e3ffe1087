from unittest.mock import MagicMock

import pytest
import requests

from logoforge.errors import UpstreamProviderError
from logoforge.generation import ImageGenerator, build_logo_prompt


def _response(status_code, body):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = body
    return response


@pytest.fixture
def image_generator():
    generator = ImageGenerator(api_key='sk-test', timeout=5)
    generator.session = MagicMock()
    return generator


def test_generate_returns_image_url(image_generator):
    image_generator.session.post.return_value = _response(200, {'data': [{'url': 'https://img/1.png'}]})

    assert image_generator.generate('A fox logo') == 'https://img/1.png'

    kwargs = image_generator.session.post.call_args.kwargs
    assert kwargs['json']['model'] == 'dall-e-3'
    assert kwargs['json']['size'] == '1024x1024'
    assert kwargs['headers']['Authorization'] == 'Bearer sk-test'
    assert kwargs['timeout'] == 5


def test_client_error_keeps_provider_status(image_generator):
    image_generator.session.post.return_value = _response(400, {'error': {'message': 'Rejected by safety system'}})

    with pytest.raises(UpstreamProviderError) as exc_info:
        image_generator.generate('prompt')

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == 'Rejected by safety system'


def test_server_error_is_bad_gateway(image_generator):
    image_generator.session.post.return_value = _response(503, {})

    with pytest.raises(UpstreamProviderError) as exc_info:
        image_generator.generate('prompt')

    assert exc_info.value.status_code == 502
    assert exc_info.value.provider_status == 503


def test_timeout(image_generator):
    image_generator.session.post.side_effect = requests.Timeout()
    with pytest.raises(UpstreamProviderError, match='timed out'):
        image_generator.generate('prompt')


def test_missing_url(image_generator):
    image_generator.session.post.return_value = _response(200, {'data': []})
    with pytest.raises(UpstreamProviderError):
        image_generator.generate('prompt')


def test_unconfigured_key():
    with pytest.raises(UpstreamProviderError):
        ImageGenerator(api_key='').generate('prompt')


def test_build_logo_prompt():
    prompt = build_logo_prompt({
        'companyName': 'Acme',
        'industry': 'Robotics',
        'keywords': 'bold, friendly',
    })
    assert '"Acme"' in prompt
    assert 'Robotics' in prompt
    assert 'bold, friendly' in prompt
