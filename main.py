import asyncio
import logging
import traceback

import discord
from discord.ext import commands

from tunecast.config import (
    CACHE_DIR,
    CACHE_LIMIT_BYTES,
    COMMAND_PREFIX,
    DB_PATH,
    DEV_GUILD_ID,
    DISCORD_TOKEN,
)
from tunecast.errors import RedactingFilter
from tunecast.file_cache import FileCache
from tunecast.kv_cache import KeyValueCache
from tunecast.settings import SettingsStore

# =========================
#  Logging
# =========================
logging.basicConfig(level=logging.INFO)
for handler in logging.getLogger().handlers:
    handler.addFilter(RedactingFilter())
log = logging.getLogger("tunecast")
discord_log = logging.getLogger("discord")
discord_log.setLevel(logging.INFO)  # DEBUG para ver todo el gateway/voz

# =========================
#  Intents & Bot
# =========================
intents = discord.Intents.default()
intents.message_content = True
intents.voice_states = True
bot = commands.Bot(command_prefix=COMMAND_PREFIX, intents=intents, help_command=None)

EXTENSIONS = ("cogs.music",)


# =========================
#  Almacenamiento
# =========================
async def init_storage():
    bot.file_cache = FileCache(CACHE_DIR, DB_PATH, CACHE_LIMIT_BYTES)
    bot.kv_cache = KeyValueCache(DB_PATH)
    bot.settings_store = SettingsStore(DB_PATH)

    await bot.kv_cache.init()
    await bot.settings_store.init()
    # loguea sus propios errores, nunca frena el arranque
    await bot.file_cache.cleanup_on_startup()
    log.info("💾 Caché lista en %s (límite %d bytes)", CACHE_DIR, CACHE_LIMIT_BYTES)


# =========================
#  Extensiones
# =========================
async def load_extensions():
    log.info("📂 Cargando extensiones...")
    for mod in EXTENSIONS:
        try:
            await bot.load_extension(mod)
            log.info("✅  Cargada: %s", mod)
        except commands.ExtensionError:
            log.exception("❌  Error al cargar %s", mod)


@bot.event
async def setup_hook():
    await init_storage()
    await load_extensions()
    try:
        if DEV_GUILD_ID:
            # el sync por servidor aparece al instante, útil para probar
            guild = discord.Object(id=DEV_GUILD_ID)
            bot.tree.copy_global_to(guild=guild)
            synced = await bot.tree.sync(guild=guild)
            log.info("[SYNC] Servidor %s: %d slash commands.", DEV_GUILD_ID, len(synced))
        else:
            synced = await bot.tree.sync()
            log.info("[SYNC] Global: %d slash commands.", len(synced))
    except discord.HTTPException as e:
        log.error("[SYNC][ERROR] %s", e)


@bot.event
async def on_ready():
    log.info("✅ TuneCast conectado como %s (%s)", bot.user, bot.user.id)


@bot.command(name="sync")
@commands.is_owner()
async def sync(ctx: commands.Context):
    """Sincroniza los slash commands a mano (por servidor si hay DEV_GUILD_ID)."""
    msg = await ctx.send("⏳ **Sincronizando comandos...**")
    try:
        if DEV_GUILD_ID:
            guild = discord.Object(id=DEV_GUILD_ID)
            bot.tree.copy_global_to(guild=guild)
            synced = await bot.tree.sync(guild=guild)
        else:
            synced = await bot.tree.sync()
        await msg.edit(content=f"✅ Sincronizados `{len(synced)}` comandos.")
        log.info("Sync manual por %s: %d comandos.", ctx.author, len(synced))
    except discord.HTTPException as e:
        await msg.edit(content=f"❌ **Falló el sync:**\n`{e}`")


# =========================
#  Arranque
# =========================
async def main():
    if not DISCORD_TOKEN:
        log.critical("❌ Falta DISCORD_TOKEN (.env o variable de entorno)")
        return
    async with bot:
        await bot.start(DISCORD_TOKEN)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("🛑 TuneCast detenido manualmente.")
    except Exception:
        log.critical("❌ Error fatal al arrancar:\n%s", traceback.format_exc())
