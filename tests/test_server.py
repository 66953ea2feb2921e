"""HTTP and WebSocket tests for the lip sync server."""

import pytest
from fastapi.testclient import TestClient

import server
from avatar_controller import AvatarController
from conftest import sine
from morph_rig import read_glb, rig_from_glb, summarize_glb


@pytest.fixture
def controller(monkeypatch):
    controller = AvatarController()
    monkeypatch.setattr(server, 'avatar_controller', controller)
    return controller


@pytest.fixture
def rigged(monkeypatch, avatar_glb):
    doc = read_glb(avatar_glb)
    controller = AvatarController(rig=rig_from_glb(doc))
    monkeypatch.setattr(server, 'avatar_controller', controller)
    monkeypatch.setattr(server, 'glb_summary', summarize_glb(doc))
    return controller


@pytest.fixture
def client(controller):
    return TestClient(server.app)


@pytest.fixture
def rigged_client(rigged):
    return TestClient(server.app)


class TestStatusEndpoints:

    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        body = response.json()
        assert body['status'] == 'healthy'
        assert body['rig_loaded'] is False
        assert body['viseme_extractor'] == 'VisemeExtractor'

    def test_viseme_info(self, client):
        body = client.get('/viseme_info').json()
        assert len(body['visemes']) == 15
        assert body['phoneme_mapping']['aa'] == 10
        assert body['viseme_mappings']['PP']['morphs'][0] == 'V_Explosive'
        assert 'anticipate' in body['transition_types']
        assert 'smile' in body['facial_expressions']

    def test_avatar_status(self, client):
        assert client.get('/avatar_status').json()['current_emotion'] == 'neutral'


class TestAnimationEndpoints:

    def test_speak(self, client):
        response = client.post('/speak', json={'text': 'hi', 'words_per_minute': 600})
        assert response.status_code == 200
        body = response.json()
        assert body['status'] == 'success'
        assert len(body['visemes']) == 2

    def test_speak_unknown_emotion(self, client):
        response = client.post('/speak', json={'text': 'hi', 'emotion': 'smug'})
        assert response.status_code == 400

    def test_speak_invalid_rate(self, client):
        response = client.post('/speak', json={'text': 'hi', 'words_per_minute': 0})
        assert response.status_code == 400

    def test_play_phonemes(self, client):
        response = client.post('/play_phonemes', json={
            'items': [{'phoneme': 'aa', 'start': 0.0, 'end': 0.05}, {'phoneme': 'p', 'start': 0.05, 'end': 0.1}],
            'transition': 'cubic',
        })
        assert response.status_code == 200
        assert response.json()['phonemes'] == 2
        assert response.json()['frames'] == 7

    @pytest.mark.parametrize('payload', [
        {'items': [], 'transition': 'bouncy'},
        {'items': [], 'emotion': 'smug'},
        {'items': [{'phoneme': 'aa', 'start': 0.5, 'end': 0.1}]},
    ])
    def test_play_phonemes_rejects_bad_input(self, client, payload):
        assert client.post('/play_phonemes', json=payload).status_code == 400

    def test_trigger_viseme(self, client, controller):
        body = client.post('/trigger_viseme', json={'phoneme': 'aa'}).json()
        assert body['viseme'] == 'aa'
        assert body['blend_shapes']['V_Open'] == 1.0
        assert controller.current_viseme == 'aa'

    def test_trigger_viseme_unknown_emotion(self, client, controller):
        response = client.post('/trigger_viseme', json={'phoneme': 'aa', 'emotion': 'smug'})
        assert response.status_code == 400
        assert controller.current_viseme == 'sil'

    def test_set_emotion(self, client, controller):
        assert client.post('/set_emotion', json={'emotion': 'happy'}).status_code == 200
        assert controller.current_emotion == 'happy'
        assert client.post('/set_emotion', json={'emotion': 'smug'}).status_code == 400

    def test_reset_avatar(self, client, controller):
        client.post('/set_emotion', json={'emotion': 'sad'})
        assert client.post('/reset_avatar').status_code == 200
        assert controller.current_emotion == 'neutral'


class TestRigEndpoints:

    def test_rig_missing(self, client):
        assert client.get('/rig').status_code == 404
        response = client.post('/rig/recommendations', json={'viseme': 'PP', 'recommendations': 'stronger'})
        assert response.status_code == 404

    def test_rig(self, rigged_client):
        body = rigged_client.get('/rig').json()
        assert set(body['meshes']) == {'CC_Game_Body', 'CC_Game_Tongue'}
        assert body['validation']['valid'] is True
        assert body['glb']['meshes'] == 3
        assert 'Mouth_Pucker' in body['facial_morphs']

    def test_recommendations(self, rigged_client, rigged):
        response = rigged_client.post('/rig/recommendations', json={
            'viseme': 'PP',
            'recommendations': {'recommendations': ['Increase V_Explosive from 0.8 to 0.95']},
        })
        assert response.status_code == 200
        assert response.json()['applied_count'] == 1
        assert rigged.rig.value('V_Explosive') == pytest.approx(0.95)


class TestExtractVisemes:

    def test_extract_utterance(self, client, wav_bytes):
        response = client.post('/extract_visemes', content=wav_bytes(sine(440, 1.0)))
        assert response.status_code == 200
        body = response.json()
        assert body['sample_rate'] == 16000
        assert body['duration'] == pytest.approx(1.0)
        assert len(body['visemes']) == 4

    def test_extract_chunk_with_offset(self, client, wav_bytes):
        response = client.post('/extract_visemes', params={'chunk_start': 2.0},
                               content=wav_bytes(sine(440, 1.0)))
        visemes = response.json()['visemes']
        assert len(visemes) == 2
        assert visemes[0]['start_time'] == pytest.approx(2.0)

    def test_extract_and_play(self, client, controller, wav_bytes):
        response = client.post('/extract_visemes', params={'play': 'true'}, content=wav_bytes(sine(440, 0.1)))
        assert response.status_code == 200
        assert response.json()['frames_sent'] > 0

    @pytest.mark.parametrize('body', [b'', b'definitely not audio'])
    def test_undecodable_audio(self, client, body):
        assert client.post('/extract_visemes', content=body).status_code == 422


class TestAvatarWebSocket:

    def test_update_viseme_message(self, client, controller):
        with client.websocket_connect('/ws/avatar') as websocket:
            assert websocket.receive_json()['type'] == 'viseme_update'
            websocket.send_json({'type': 'update_viseme', 'phoneme': 'aa'})
            message = websocket.receive_json()
            assert message['viseme'] == 'aa'
            assert message['blend_shapes']['V_Open'] == 1.0

    def test_bad_messages_are_ignored(self, client, controller):
        with client.websocket_connect('/ws/avatar') as websocket:
            websocket.receive_json()
            websocket.send_text('not json')
            websocket.send_json({'type': 'set_emotion', 'emotion': 'smug'})
            websocket.send_json({'type': 'set_emotion', 'emotion': 'happy'})
            assert websocket.receive_json()['emotion'] == 'happy'
        assert controller.active_connections == []

    @pytest.mark.parametrize('payload', ['42', '[1]', '"aa"', 'null'])
    def test_messages_that_are_not_objects_are_ignored(self, client, controller, payload):
        with client.websocket_connect('/ws/avatar') as websocket:
            websocket.receive_json()
            websocket.send_text(payload)
            websocket.send_json({'type': 'update_viseme', 'phoneme': 'p'})
            assert websocket.receive_json()['viseme'] == 'PP'
        assert controller.active_connections == []

    def test_update_viseme_with_unknown_emotion_is_ignored(self, client, controller):
        with client.websocket_connect('/ws/avatar') as websocket:
            websocket.receive_json()
            websocket.send_json({'type': 'update_viseme', 'phoneme': 'aa', 'emotion': 'smug'})
            websocket.send_json({'type': 'update_viseme', 'phoneme': 'p', 'emotion': 'sad'})
            message = websocket.receive_json()
            assert message['viseme'] == 'PP'
            assert message['blend_shapes']['Mouth_Frown_L'] == pytest.approx(0.25)
        assert controller.current_viseme == 'PP'
