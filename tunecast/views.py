# tunecast/views.py
from __future__ import annotations

import re

import discord

from .config import QUEUE_PAGE_SIZE
from .errors import PlayerError, format_error

THEME = {
    "primary": 0x1DB954,
    "warning": 0xF1C40F,
    "danger": 0xE74C3C,
    "muted": 0x2C2F33,
}

PROGRESS_SEGMENTS = 12


def fmt_time(seconds: int) -> str:
    seconds = max(0, int(seconds or 0))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h}:{m:02d}:{s:02d}" if h else f"{m}:{s:02d}"


def clean_title(title: str, limit: int = 0) -> str:
    text = re.sub(r"\[.*?\]", "", title or "").strip() or "Título desconocido"
    if limit and len(text) > limit:
        text = text[: limit - 1] + "…"
    return text


def track_line(track, limit: int = 0) -> str:
    artist = (track.artist or "").strip() or "Artista desconocido"
    return clean_title(f"{track.title} - {artist}", limit)


def progress_bar(fraction: float, segments: int = PROGRESS_SEGMENTS) -> str:
    fraction = min(max(fraction, 0.0), 1.0)
    index = min(int(fraction * segments), segments - 1)
    return "".join("🔘" if i == index else "▬" for i in range(segments))


def _is_playing(player) -> bool:
    return player.status.value == "playing"


def player_ui(player) -> str:
    track = player.current
    if not track:
        return ""
    position = player.get_position()
    button = "⏹️" if _is_playing(player) else "▶️"
    if track.is_live:
        bar, elapsed = progress_bar(0), "en vivo"
    else:
        bar = progress_bar(position / track.length_seconds if track.length_seconds else 0)
        elapsed = f"{fmt_time(position)}/{fmt_time(track.length_seconds)}"
    loop = "🔂" if player.loop_track else ("🔁" if player.loop_queue else "")
    return f"{button} {bar} `[{elapsed}]` 🔉 {player.get_volume()}% {loop}".rstrip()


def build_player_embed(player) -> discord.Embed:
    track = player.current
    if not track:
        return discord.Embed(title="🎶 No suena nada", color=THEME["muted"])

    playing = _is_playing(player)
    embed = discord.Embed(
        title="🎶 Reproduciendo" if playing else "⏸️ En pausa",
        description=(
            f"**{track_line(track)}**\n"
            f"🙋 Pedido por: <@{track.requested_by_user_id}>\n\n"
            f"{player_ui(player)}"
        ),
        color=THEME["primary"] if playing else THEME["warning"],
    )
    if track.thumbnail_url:
        embed.set_thumbnail(url=track.thumbnail_url)
    embed.set_footer(text=f"Fuente: {track.artist or 'desconocida'}")
    return embed


def build_queue_embed(player, page: int = 1, page_size: int = QUEUE_PAGE_SIZE) -> discord.Embed:
    track = player.current
    if not track:
        raise PlayerError("la cola está vacía")

    upcoming = player.upcoming()
    max_page = max(1, -(-len(upcoming) // page_size))
    if page < 1 or page > max_page:
        raise PlayerError("la cola no es tan grande")

    begin = (page - 1) * page_size
    lines = []
    for i, t in enumerate(upcoming[begin:begin + page_size], start=begin + 1):
        duration = "en vivo" if t.is_live else fmt_time(t.length_seconds)
        lines.append(f"`{i}.` {track_line(t, 48)} `[{duration}]`")

    description = f"**{track_line(track)}**\n🙋 Pedido por: <@{track.requested_by_user_id}>\n\n{player_ui(player)}"
    if lines:
        description += "\n\n**📜 A continuación:**\n" + "\n".join(lines)

    total = sum(t.length_seconds for t in upcoming)
    count = len(upcoming)
    embed = discord.Embed(
        title="🎶 Reproduciendo" + (" (loop activo)" if player.loop_track else "") if _is_playing(player) else "📜 Canciones en cola",
        description=description,
        color=THEME["primary"] if _is_playing(player) else THEME["muted"],
    )
    embed.add_field(name="En cola", value="-" if not count else ("1 canción" if count == 1 else f"{count} canciones"), inline=True)
    embed.add_field(name="Duración total", value=fmt_time(total) if total else "-", inline=True)
    embed.add_field(name="Página", value=f"{page} de {max_page}", inline=True)

    playlist = f" ({track.playlist.title})" if track.playlist else ""
    embed.set_footer(text=f"Fuente: {track.artist or 'desconocida'}{playlist}")
    if track.thumbnail_url:
        embed.set_thumbnail(url=track.thumbnail_url)
    return embed


class MusicControls(discord.ui.View):
    """
    Vista persistente (timeout=None), custom_ids fijos.
    Los botones solo funcionan para quien está en el canal de voz del bot.
    """

    def __init__(self, cog):
        super().__init__(timeout=None)
        self.cog = cog  # cogs.music.Music

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if not interaction.guild:
            await interaction.response.send_message("❌ Solo funciona en servidores.", ephemeral=True)
            return False

        player = self.cog.service.get(interaction.guild.id)
        if not player.is_connected():
            await interaction.response.send_message("🚫 No estoy conectado a un canal de voz.", ephemeral=True)
            return False

        user_voice = getattr(interaction.user, "voice", None)
        if not user_voice or not user_voice.channel or user_voice.channel.id != player.session.channel_id:
            await interaction.response.send_message("🎧 Tienes que estar en **mi canal de voz** para usar esto.", ephemeral=True)
            return False
        return True

    async def _run(self, interaction: discord.Interaction, action, done: str):
        player = self.cog.service.get(interaction.guild.id)
        try:
            result = await action(player)
        except PlayerError as e:
            await interaction.response.send_message(format_error(e), ephemeral=True)
            return
        await interaction.response.send_message(result if isinstance(result, str) else done, ephemeral=True)
        if player.now_playing_message is not None:
            try:
                await player.now_playing_message.edit(embed=build_player_embed(player), view=self)
            except discord.HTTPException:
                player.set_now_playing_message(None)

    @discord.ui.button(label="Pausa/Reanudar", style=discord.ButtonStyle.primary, emoji="⏯️", custom_id="tunecast:toggle")
    async def toggle(self, interaction: discord.Interaction, button: discord.ui.Button):
        async def _toggle(player):
            if _is_playing(player):
                await player.pause()
                return "⏸️ Pausado"
            await player.play()
            return "▶️ Reanudado"

        await self._run(interaction, _toggle, "")

    @discord.ui.button(label="Anterior", style=discord.ButtonStyle.secondary, emoji="⏮️", custom_id="tunecast:back")
    async def back(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self._run(interaction, lambda p: p.back(), "⏮️ Anterior")

    @discord.ui.button(label="Siguiente", style=discord.ButtonStyle.secondary, emoji="⏭️", custom_id="tunecast:next")
    async def skip(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self._run(interaction, lambda p: p.forward(1), "⏭️ Saltada")

    @discord.ui.button(label="Loop", style=discord.ButtonStyle.secondary, emoji="🔁", custom_id="tunecast:loop")
    async def loop(self, interaction: discord.Interaction, button: discord.ui.Button):
        async def _loop(player):
            return "🔁 " + player.toggle_loop_mode()

        await self._run(interaction, _loop, "")

    @discord.ui.button(label="Detener", style=discord.ButtonStyle.danger, emoji="⏹️", custom_id="tunecast:stop")
    async def stop_button(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self._run(interaction, lambda p: p.stop(), "⏹️ Detenido y cola vaciada")
