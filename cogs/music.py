# cogs/music.py
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from tunecast.config import QUEUE_MAX_PAGE_SIZE, UPLOAD_PROBE_MAX_BYTES
from tunecast.downloader import YTDLProvider, read_upload_tags
from tunecast.errors import MusicBotError, format_error
from tunecast.player import MusicService, PlayerStatus
from tunecast.segments import SegmentSkipper
from tunecast.track import SourceKind, TrackMetadata
from tunecast.transcoder import Transcoder
from tunecast.views import MusicControls, build_player_embed, build_queue_embed, fmt_time

log = logging.getLogger("tunecast.cog")


def requires_voice():
    """El autor tiene que estar en voz, y en nuestro canal si ya estamos conectados."""

    async def predicate(ctx: commands.Context) -> bool:
        if not ctx.guild:
            raise commands.CheckFailure("❌ Solo funciona en servidores.")
        voice = getattr(ctx.author, "voice", None)
        if not voice or not voice.channel:
            raise commands.CheckFailure("🚫 Debes estar en un canal de voz primero.")

        player = ctx.cog.service.get(ctx.guild.id)
        if player.is_connected() and player.session.channel_id != voice.channel.id:
            raise commands.CheckFailure("🎧 Tienes que estar en **mi canal de voz**.")
        return True

    return commands.check(predicate)


class PlayFlags(commands.FlagConverter, delimiter=" ", prefix="--"):
    query: str = commands.flag(positional=True, description="Búsqueda o URL")
    immediate: bool = commands.flag(default=False, description="Agregar al frente de la cola")
    skip: bool = commands.flag(default=False, description="Saltar la canción actual")
    shuffle: bool = commands.flag(default=False, description="Mezclar lo que se agrega (playlists)")


class Music(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.provider = YTDLProvider(kv_cache=bot.kv_cache)
        self.skipper = SegmentSkipper(kv_cache=bot.kv_cache)
        self.service = MusicService(
            file_cache=bot.file_cache,
            transcoder=Transcoder(),
            provider=self.provider,
            settings_store=bot.settings_store,
            on_state_change=self.refresh_panel,
            on_track_started=self.announce,
        )
        self.controls = MusicControls(self)

    async def cog_load(self):
        self.bot.add_view(self.controls)

    # -------------------------
    # Callbacks del player
    # -------------------------
    async def refresh_panel(self, guild_id: int):
        player = self.service.get(guild_id)
        message = player.now_playing_message
        if message is None or player.current is None:
            return
        try:
            await message.edit(embed=build_player_embed(player), view=self.controls)
        except discord.HTTPException as e:
            log.debug("No se pudo refrescar el panel en %s: %s", guild_id, e)

    async def announce(self, guild_id: int, track):
        channel = self.bot.get_channel(track.added_in_channel_id)
        if channel is None:
            return
        player = self.service.get(guild_id)
        message = await channel.send(embed=build_player_embed(player), view=self.controls)
        player.set_now_playing_message(message)

    # -------------------------
    # Errores
    # -------------------------
    async def cog_command_error(self, ctx: commands.Context, error: commands.CommandError):
        original = getattr(error, "original", error)
        if isinstance(original, MusicBotError):
            await ctx.send(format_error(original), ephemeral=True)
            return
        if isinstance(error, commands.CheckFailure):
            await ctx.send(str(error) or format_error("no puedes usar eso aquí"), ephemeral=True)
            return
        if isinstance(error, (commands.BadArgument, commands.MissingRequiredArgument, commands.BadFlagArgument)):
            await ctx.send(format_error(error), ephemeral=True)
            return
        log.error("Falló el comando %s", ctx.command, exc_info=original)
        await ctx.send(format_error("algo salió mal"), ephemeral=True)

    @commands.Cog.listener()
    async def on_guild_remove(self, guild: discord.Guild):
        await self.service.remove(guild.id)

    # -------------------------
    # Helpers
    # -------------------------
    async def _enqueue(self, ctx: commands.Context, tracks, immediate: bool = False,
                       skip: bool = False, shuffle: bool = False):
        player = self.service.get(ctx.guild.id)
        had_current = player.current is not None

        await player.connect(ctx.author.voice.channel)
        await player.add_many(
            [t.queued(ctx.channel.id, ctx.author.id) for t in tracks],
            front=immediate,
            shuffle=shuffle and len(tracks) > 1,
        )

        first = tracks[0]
        extra = f" y **{len(tracks) - 1}** canciones más" if len(tracks) > 1 else ""
        if first.playlist:
            extra += f" de la playlist **{first.playlist.title}**"
        where = "al frente de la cola" if immediate else "a la cola"

        started = None
        if not had_current or player.status == PlayerStatus.IDLE:
            started = await player.play()
            if started is None:
                await ctx.send(format_error("no se pudo reproducir nada de lo pedido"))
                return

        if skip and started is None and player.can_go_forward(1):
            await player.forward(1)
            extra += " y se saltó la canción actual"

        if started is None and not skip:
            await ctx.send(f"✅ **{first.display}**{extra} agregada {where}")
            return

        message = await ctx.send(
            content=f"✅ **{first.display}**{extra} agregada {where}" if extra else None,
            embed=build_player_embed(player),
            view=self.controls,
        )
        player.set_now_playing_message(message)

    async def _play_query(self, ctx: commands.Context, query: str, immediate: bool = False,
                          skip: bool = False, shuffle: bool = False):
        await ctx.defer()
        tracks = await self.provider.search(query, limit=1)
        if not tracks:
            await ctx.send(format_error("sin resultados"))
            return
        tracks = [await self.skipper.adjust(t) for t in tracks]
        await self._enqueue(ctx, tracks, immediate, skip, shuffle)

    async def _upload_track(self, ctx: commands.Context, attachment: discord.Attachment) -> TrackMetadata:
        length, title, artist = 0, None, None
        if attachment.size <= UPLOAD_PROBE_MAX_BYTES:
            try:
                data = await attachment.read()
            except discord.HTTPException as e:
                log.warning("No se pudo leer el adjunto %s: %s", attachment.filename, e)
            else:
                length, title, artist = await asyncio.to_thread(read_upload_tags, data)
        return TrackMetadata(
            url=attachment.url,
            title=title or attachment.filename,
            artist=artist or ctx.author.display_name,
            length_seconds=length,
            source_kind=SourceKind.UPLOADED_FILE,
        )

    # -------------------------
    # Comandos
    # -------------------------
    @commands.hybrid_command(name="play", aliases=["p"], description="Reproduce una canción, una playlist o un directo.")
    @requires_voice()
    async def play(self, ctx: commands.Context, *, flags: PlayFlags):
        await self._play_query(ctx, flags.query, flags.immediate, flags.skip, flags.shuffle)

    @commands.hybrid_command(name="playnext", aliases=["pn"], description="Agrega una canción justo después de la actual.")
    @app_commands.describe(query="Búsqueda o URL")
    @requires_voice()
    async def playnext(self, ctx: commands.Context, *, query: str):
        await self._play_query(ctx, query, immediate=True)

    @commands.hybrid_command(name="file", description="Reproduce un archivo de audio subido.")
    @app_commands.describe(
        attachment="Archivo de audio",
        immediate="Agregar al frente de la cola",
        skip="Saltar la canción actual",
    )
    @requires_voice()
    async def file(self, ctx: commands.Context, attachment: discord.Attachment,
                   immediate: bool = False, skip: bool = False):
        if not (attachment.content_type or "").startswith(("audio/", "video/")):
            await ctx.send(format_error("ese archivo no es audio"), ephemeral=True)
            return
        await ctx.defer()
        track = await self._upload_track(ctx, attachment)
        await self._enqueue(ctx, [track], immediate, skip)

    @commands.hybrid_command(name="pause", description="Pausa la reproducción.")
    @requires_voice()
    async def pause(self, ctx: commands.Context):
        await self.service.get(ctx.guild.id).pause()
        await ctx.send("⏸️ Pausado")

    @commands.hybrid_command(name="resume", description="Reanuda la reproducción.")
    @requires_voice()
    async def resume(self, ctx: commands.Context):
        player = self.service.get(ctx.guild.id)
        if player.status == PlayerStatus.PLAYING:
            await ctx.send("ℹ️ Ya está sonando")
            return
        if not player.is_connected():
            await player.connect(ctx.author.voice.channel)
        await player.play()
        await ctx.send(embed=build_player_embed(player))

    @commands.hybrid_command(name="skip", aliases=["next"], description="Salta la canción actual.")
    @requires_voice()
    async def skip(self, ctx: commands.Context, number: int = 1):
        if number < 1:
            await ctx.send(format_error("hay que saltar al menos 1 canción"), ephemeral=True)
            return
        player = self.service.get(ctx.guild.id)
        await player.forward(number)
        await ctx.send(embed=build_player_embed(player))

    @commands.hybrid_command(name="back", aliases=["prev"], description="Vuelve a la canción anterior.")
    @requires_voice()
    async def back(self, ctx: commands.Context):
        player = self.service.get(ctx.guild.id)
        await player.back()
        await ctx.send(embed=build_player_embed(player))

    @commands.hybrid_command(name="replay", description="Vuelve a empezar la canción actual.")
    @requires_voice()
    async def replay(self, ctx: commands.Context):
        player = self.service.get(ctx.guild.id)
        if player.current is not None and player.current.is_live:
            await ctx.send(format_error("no se puede repetir un directo"), ephemeral=True)
            return
        await player.seek(0)
        await ctx.send("👍 Canción reiniciada")

    @commands.hybrid_command(name="seek", description="Salta a un segundo de la canción actual.")
    @requires_voice()
    async def seek(self, ctx: commands.Context, seconds: int):
        player = self.service.get(ctx.guild.id)
        await player.seek(seconds)
        await ctx.send(f"👍 Posición: {fmt_time(player.get_position())}")

    @commands.hybrid_command(name="fseek", description="Adelanta la canción actual, en segundos.")
    @requires_voice()
    async def fseek(self, ctx: commands.Context, seconds: int):
        player = self.service.get(ctx.guild.id)
        await player.forward_seek(seconds)
        await ctx.send(f"👍 Posición: {fmt_time(player.get_position())}")

    @commands.hybrid_command(name="stop", description="Detiene todo, sale del canal y vacía la cola.")
    @requires_voice()
    async def stop(self, ctx: commands.Context):
        await self.service.get(ctx.guild.id).stop()
        await ctx.send("⏹️ Detenido y cola vaciada")

    @commands.hybrid_command(name="clear", description="Vacía la cola menos la canción actual.")
    @requires_voice()
    async def clear(self, ctx: commands.Context):
        await self.service.get(ctx.guild.id).clear()
        await ctx.send("🧹 Cola vaciada")

    @commands.hybrid_command(name="shuffle", aliases=["mix"], description="Mezcla las próximas canciones.")
    @requires_voice()
    async def shuffle(self, ctx: commands.Context):
        player = self.service.get(ctx.guild.id)
        if player.queue_size() < 2:
            await ctx.send("📉 Necesito al menos 2 canciones en la cola para mezclar.")
            return
        await player.shuffle()
        await ctx.send("🔀 **Cola mezclada.**")

    @commands.hybrid_command(name="loop", description="Cambia el modo loop: off, canción, cola.")
    @requires_voice()
    async def loop(self, ctx: commands.Context):
        await ctx.send("🔁 " + self.service.get(ctx.guild.id).toggle_loop_mode())

    @commands.hybrid_command(name="volume", aliases=["vol"], description="Muestra o cambia el volumen (0-100).")
    @requires_voice()
    async def volume(self, ctx: commands.Context, level: Optional[int] = None):
        player = self.service.get(ctx.guild.id)
        if level is None:
            await ctx.send(f"🔉 Volumen: {player.get_volume()}%")
            return
        player.set_volume(level)
        await ctx.send(f"🔉 Volumen en {level}%")

    @commands.hybrid_command(name="queue", aliases=["q"], description="Muestra la cola.")
    @app_commands.describe(page="Página", page_size="Canciones por página")
    @commands.guild_only()
    async def queue(self, ctx: commands.Context, page: int = 1,
                    page_size: Optional[commands.Range[int, 1, QUEUE_MAX_PAGE_SIZE]] = None):
        player = self.service.get(ctx.guild.id)
        if page_size is None:
            await ctx.send(embed=build_queue_embed(player, page))
        else:
            await ctx.send(embed=build_queue_embed(player, page, page_size))

    @commands.hybrid_command(name="now", aliases=["np"], description="Muestra la canción actual.")
    @commands.guild_only()
    async def now(self, ctx: commands.Context):
        player = self.service.get(ctx.guild.id)
        if player.current is None:
            await ctx.send(format_error("no está sonando nada"))
            return
        message = await ctx.send(embed=build_player_embed(player), view=self.controls)
        player.set_now_playing_message(message)

    @commands.hybrid_command(name="remove", description="Quita canciones de la cola.")
    @requires_voice()
    async def remove(self, ctx: commands.Context, position: int = 1, amount: int = 1):
        removed = await self.service.get(ctx.guild.id).remove(position, amount)
        await ctx.send(f"🗑️ {len(removed)} canción(es) quitada(s)")

    @commands.hybrid_command(name="move", description="Mueve una canción dentro de la cola.")
    @requires_voice()
    async def move(self, ctx: commands.Context, src: int, dst: int):
        track = await self.service.get(ctx.guild.id).move(src, dst)
        await ctx.send(f"↕️ **{track.display}** movida a la posición **{dst}**")


async def setup(bot):
    await bot.add_cog(Music(bot))
