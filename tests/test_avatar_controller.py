"""Tests for the avatar controller: client tracking, broadcast and playback."""

import pytest

from avatar_controller import AvatarController
from conftest import FakeWebSocket
from lipsync_animator import VisemeFrame
from morph_rig import MorphRig
from viseme_config import ACTORCORE_VISEME_MAPPINGS

pytestmark = pytest.mark.asyncio


@pytest.fixture
def controller():
    return AvatarController()


@pytest.fixture
def rigged_controller():
    names = sorted({m for mapping in ACTORCORE_VISEME_MAPPINGS.values() for m in mapping.morphs})
    return AvatarController(rig=MorphRig.from_morph_names(names), max_intensity=1.0)


async def connected(controller):
    websocket = FakeWebSocket()
    await controller.connect(websocket)
    return websocket


class TestConnections:
    """Connecting clients and broadcasting updates."""

    async def test_connect_sends_current_pose(self, controller):
        websocket = await connected(controller)
        assert websocket.accepted
        assert websocket.sent[0]['type'] == 'viseme_update'
        assert websocket.sent[0]['emotion'] == 'neutral'
        assert controller.current_state()['connected_clients'] == 1

    async def test_disconnect(self, controller):
        websocket = await connected(controller)
        controller.disconnect(websocket)
        controller.disconnect(websocket)
        assert controller.active_connections == []

    async def test_broadcast_reaches_every_client(self, controller):
        first, second = await connected(controller), await connected(controller)
        assert await controller.broadcast({'V_Open': 0.5}) == 2
        assert first.sent[-1]['blend_shapes'] == {'V_Open': 0.5}
        assert second.sent[-1]['blend_shapes'] == {'V_Open': 0.5}

    async def test_failing_client_is_dropped(self, controller):
        healthy, broken = await connected(controller), await connected(controller)
        broken.fail = True
        assert await controller.broadcast({'V_Open': 0.5}) == 1
        assert controller.active_connections == [healthy]

    async def test_broadcast_without_clients_updates_state(self, controller):
        assert await controller.broadcast({'Jaw_Open': 0.2}) == 0
        assert controller.current_state()['current_blend_shapes'] == {'Jaw_Open': 0.2}


class TestPlayback:
    """Frame playback, text and phoneme animation."""

    async def test_play_frames(self, controller):
        websocket = await connected(controller)
        frames = [VisemeFrame(0.0, {'V_Open': 1.0}, 'aa'), VisemeFrame(0.02, {'V_Explosive': 0.9}, 'PP')]
        assert await controller.play_frames(frames) == {'frames_sent': 2, 'errors': 0}
        assert [m['viseme'] for m in websocket.sent[1:]] == ['aa', 'PP']
        assert not controller.is_animating

    async def test_play_no_frames(self, controller):
        assert await controller.play_frames([]) == {'frames_sent': 0, 'errors': 0}

    async def test_play_phoneme_sequence(self, controller):
        websocket = await connected(controller)
        result = await controller.play_phoneme_sequence([('aa', 0.0, 0.05), ('p', 0.05, 0.1)])
        assert result['frames'] == 7
        assert result['frames_sent'] == 7
        assert len(websocket.sent) == 8

    async def test_speak_text(self, controller):
        websocket = await connected(controller)
        result = await controller.speak_text('hi', words_per_minute=600)
        assert result['emotion'] == 'neutral'
        assert [v['phoneme'] for v in result['visemes']] == ['h', 'ih']
        assert result['duration_ms'] == pytest.approx(100)
        assert result['frames_sent'] == result['frames']
        # Ends on a rest pose
        assert websocket.sent[-1]['blend_shapes'] == {}

    async def test_speak_text_detects_emotion(self, controller):
        result = await controller.speak_text('great', words_per_minute=1200)
        assert result['emotion'] == 'happy'
        assert controller.current_emotion == 'happy'

    async def test_excited_line_opens_the_mouth_wider(self, controller):
        text = 'wow, incredible'
        websocket = await connected(controller)
        excited = await controller.speak_text(text, words_per_minute=1200)
        excited_open = [m['blend_shapes'].get('V_Open', 0.0) for m in websocket.sent[1:]]

        websocket.sent.clear()
        neutral = await controller.speak_text(text, emotion='neutral', words_per_minute=1200)
        neutral_open = [m['blend_shapes'].get('V_Open', 0.0) for m in websocket.sent]

        assert excited['emotion'] == 'excited'
        assert excited['emotion_intensity'] == pytest.approx(2 / 3)
        assert excited['frames'] == neutral['frames']
        assert all(e >= n - 1e-9 for e, n in zip(excited_open, neutral_open))
        assert sum(excited_open) > sum(neutral_open)

    async def test_speak_text_rejects_unknown_emotion(self, controller):
        with pytest.raises(ValueError):
            await controller.speak_text('hi', emotion='smug')


class TestManualControl:
    """Single visemes, emotions and reset."""

    async def test_trigger_viseme(self, controller):
        websocket = await connected(controller)
        weights = await controller.trigger_viseme('AA')
        assert weights['V_Open'] == 1.0
        assert controller.current_viseme == 'aa'
        assert websocket.sent[-1]['viseme'] == 'aa'

    async def test_set_emotion_reapplies_current_viseme(self, controller):
        websocket = await connected(controller)
        await controller.trigger_viseme('aa')
        await controller.set_emotion('happy')
        assert controller.current_emotion == 'happy'
        assert websocket.sent[-1]['emotion'] == 'happy'
        assert websocket.sent[-1]['blend_shapes']['Mouth_Smile_L'] == pytest.approx(0.3)
        assert websocket.sent[-1]['blend_shapes']['V_Open'] == 1.0

    async def test_trigger_viseme_rejects_unknown_emotion(self, controller):
        websocket = await connected(controller)
        with pytest.raises(ValueError):
            await controller.trigger_viseme('aa', 'smug')
        assert controller.current_viseme == 'sil'
        assert len(websocket.sent) == 1

    async def test_set_unknown_emotion(self, controller):
        with pytest.raises(ValueError):
            await controller.set_emotion('smug')
        assert controller.current_emotion == 'neutral'

    async def test_reset_to_neutral(self, controller):
        await controller.set_emotion('sad')
        await controller.trigger_viseme('aa')
        await controller.reset_to_neutral()
        state = controller.current_state()
        assert state['current_emotion'] == 'neutral'
        assert state['current_viseme'] == 'sil'
        assert state['current_blend_shapes'] == {}


class TestRig:
    """Driving the morph rig and tuning mappings."""

    async def test_broadcast_drives_rig(self, rigged_controller):
        await rigged_controller.trigger_viseme('aa')
        assert rigged_controller.rig.value('V_Open') == pytest.approx(1.0)
        assert rigged_controller.rig.value('V_Explosive') == 0.0

    async def test_rig_values_are_capped(self):
        controller = AvatarController(rig=MorphRig.from_morph_names(['V_Open', 'Jaw_Open']), max_intensity=0.6)
        await controller.trigger_viseme('aa')
        assert controller.rig.value('V_Open') == pytest.approx(0.6)

    async def test_recommendations_require_rig(self, controller):
        with pytest.raises(LookupError):
            controller.apply_recommendations('PP', 'Increase V_Explosive from 0.8 to 0.95')

    async def test_apply_recommendations(self, rigged_controller):
        result = rigged_controller.apply_recommendations('pp', 'Increase V_Explosive from 0.8 to 0.95')
        assert result['viseme'] == 'PP'
        assert result['applied_count'] == 1
        assert result['changes'][0]['morph_name'] == 'V_Explosive'
        assert rigged_controller.rig.value('V_Explosive') == pytest.approx(0.95)

    async def test_added_morph_joins_the_mapping(self, rigged_controller):
        result = rigged_controller.apply_recommendations('PP', 'Add Jaw_Open at 0.3')
        assert 'Jaw_Open' in result['mapping']['morphs']
        assert 'Jaw_Open' not in ACTORCORE_VISEME_MAPPINGS['PP'].morphs

        weights = await rigged_controller.trigger_viseme('p')
        assert weights['Jaw_Open'] == pytest.approx(0.3 * 0.9)
