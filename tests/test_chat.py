import asyncio

from imagine.chat import (
    DELETE_ERROR,
    ERROR_COLOR,
    BroadcastChatSession,
    Reply,
    ReplyFile,
    error_reply,
    format_error,
    generation_buttons,
)
from imagine.messages import (
    changing_models_content,
    imagine_message_content,
    position_content,
    progress_bar,
)
from shared.schemas import BackendConfig, Interaction, TextToImageRequest


class RecordingSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_text(self, text):
        if self.fail:
            raise ConnectionError("gone")
        self.sent.append(text)

    async def close(self):
        pass


def test_format_error_variants():
    assert format_error() == "An unknown error has occurred"
    assert format_error(None) == "An unknown error has occurred"
    assert format_error(ValueError("bad seed")) == "bad seed"
    assert format_error("one", ["two"]) == "Multiple errors have occurred:\none\ntwo"


def test_error_reply_redacts_token_and_offers_delete():
    interaction = Interaction(id="i", user_id="u", command="imagine")
    reply = error_reply("auth failed for s3cr3t", interaction=interaction, token="s3cr3t")
    assert reply.content == "Could not run `imagine`"
    assert reply.embeds[0].color == ERROR_COLOR
    assert reply.embeds[0].fields[0].value == "auth failed for [...]"
    assert [b.custom_id for b in reply.components] == [DELETE_ERROR]

    private = error_reply("oops", ephemeral=True)
    assert private.ephemeral and private.components == []


def test_generation_buttons_layout():
    labels = [b.label for b in generation_buttons(2)]
    assert labels == ["Re-roll", "V1", "U1", "V2", "U2", "Delete"]


def test_broadcast_keeps_message_id_and_drops_dead_clients():
    session = BroadcastChatSession()
    alive, dead = RecordingSocket(), RecordingSocket(fail=True)
    session.connect("a", alive)
    session.connect("b", dead)
    interaction = Interaction(id="i", user_id="u")

    async def scenario():
        first = await session.edit_reply(interaction, Reply(content="queued"))
        second = await session.edit_reply(
            interaction, Reply(content="done", files=[ReplyFile(filename="x.png", content=b"\x89PNG")])
        )
        follow = await session.followup(interaction, Reply(content="note", ephemeral=True))
        return first, second, follow

    first, second, follow = asyncio.run(scenario())
    assert first == second
    assert follow != first
    assert list(session.clients) == ["a"]
    assert len(alive.sent) == 3
    assert '"content": "iVBORw=="' in alive.sent[1]


def test_imagine_message_content_in_progress():
    request = TextToImageRequest(prompt="a cat", seed=-1, steps=20, width=512, height=768, enable_hr=True,
                                 hr_scale=2.0, hr_resize_x=1024, hr_resize_y=1536)
    text = imagine_message_content(
        request, "u1", progress=0.5, models=BackendConfig(sd_model_checkpoint="base"), ram="1.0 GB / 2.0 GB"
    )
    assert text.startswith("<@u1> asked me to imagine with step: `20` cfg: `7.0` seed: `at random(-1)`")
    assert "= `1024 x 1536`" in text
    assert "**Checkpoint**: `base`" in text
    assert progress_bar(0.5) in text
    assert "RAM: 1.0 GB / 2.0 GB" in text
    assert text.endswith("```\na cat\n```")


def test_imagine_message_content_is_truncated():
    request = TextToImageRequest(prompt="x" * 5000)
    assert len(imagine_message_content(request, "u1")) == 2000


def test_changing_models_and_position_text():
    text = changing_models_content(
        BackendConfig(sd_model_checkpoint="a", sd_vae="Automatic"), BackendConfig(sd_model_checkpoint="b")
    )
    assert "**Checkpoint**: `a` -> `b`" in text
    assert "**VAE**: `Automatic` -> `Automatic`" in text
    assert "**Hypernetwork**: `<nil>` -> `<nil>`" in text
    assert position_content(3).endswith("#3 in line.")
