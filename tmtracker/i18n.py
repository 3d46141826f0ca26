from __future__ import annotations

from typing import Dict

from .config import logger


TRANSLATIONS: Dict[str, Dict[str, str]] = {
    "en": {
        "error.generic": "❌ An error occurred while processing this command.",
        "error.queue_full": "⏳ Command queue is full, please try again later.",
        "error.no_permission": "❌ You need administrator permissions to use this command.",
        "error.not_authorized": "❌ You are not authorized to modify global settings.",
        "error.group_only": "❌ This command only works in group chats.",
        "help.title": "🏁 <b>Trackmania Records Bot</b>",
        "help.members": "<b>Commands for all members:</b>",
        "help.admins": "<b>Admin only:</b>",
        "help.operator": "<b>Bot operator only:</b>",
        "cmd.help": "Show help and available commands",
        "cmd.register": "Register your Trackmania account",
        "cmd.unregister": "Stop tracking your account in this chat",
        "cmd.records": "Show your recent campaign records",
        "cmd.leaderboard": "Country leaderboard for the campaign or a map",
        "cmd.setchannel": "Set where announcements are sent",
        "cmd.setminposition": "Only announce records within this world position",
        "cmd.toggle": "Enable or disable announcements",
        "cmd.language": "Change the chat language",
        "cmd.setcountry": "Set the country used for leaderboards",
        "cmd.checknow": "Check for new records right now",
        "cmd.setinterval": "Change how often records are checked",
        "register.usage": "Usage: /register &lt;account_id&gt; (available from trackmania.io)",
        "register.success": "✅ You have been registered for Trackmania record tracking!",
        "register.updated": "✅ Your Trackmania account has been updated!",
        "unregister.success": "✅ You have been unregistered from Trackmania record tracking.",
        "unregister.not_registered": "You are not registered in this chat.",
        "records.not_registered": "You are not registered. Use /register to register your Trackmania account.",
        "records.none": "You don't have any records yet.",
        "records.title": "🏆 <b>Recent records: {username}</b>",
        "leaderboard.title": "🏆 <b>{country} leaderboard: {map_name}</b>",
        "leaderboard.season_title": "🏆 <b>{country} campaign leaderboard: {season}</b>",
        "leaderboard.no_map": "No maps found matching \"{map_name}\".",
        "leaderboard.empty": "No {country} records found.",
        "setchannel.usage": "Usage: /setchannel &lt;campaign|weekly&gt; [chat_id]",
        "setchannel.changed": "✅ {category} announcements will now be sent to <code>{channel}</code>",
        "setminposition.usage": "Usage: /setminposition &lt;1-100000&gt;",
        "setminposition.changed": "✅ Records will now only be announced for world positions within the top {position}",
        "toggle.usage": "Usage: /toggle &lt;campaign|weekly&gt; &lt;on|off&gt;",
        "toggle.changed": "✅ {category} announcements have been {status} for this chat.",
        "toggle.already": "{category} announcements are already {status} for this chat.",
        "status.enabled": "enabled",
        "status.disabled": "disabled",
        "category.campaign": "Campaign",
        "category.weekly": "Weekly shorts",
        "language.usage": "Usage: /language &lt;en|es&gt;",
        "language.changed": "✅ Language has been changed to English.",
        "setcountry.usage": "Usage: /setcountry &lt;code&gt; ({countries})",
        "setcountry.changed": "✅ Default country has been set to {country}.",
        "setinterval.usage": "Usage: /setinterval &lt;campaign|weekly&gt; &lt;5-1440&gt;",
        "setinterval.changed": "✅ {category} search interval has been set to {minutes} minutes.",
        "checknow.queued": "🔄 Checking campaign and weekly shorts records now...",
        "record.title": "🏆 New PB!",
        "record.description": "<b>{username}</b> just set a {record_type}!",
        "record.first": "first record",
        "record.personal_best": "new personal best",
        "record.map": "🗺️ Map",
        "record.time": "⏱️ Time",
        "record.previous": "⏮️ Previous",
        "record.world_position": "🌍 World Position",
        "weekly.author": "Trackmania Weekly Shorts",
        "campaign.author": "Trackmania Campaign Records",
    },
    "es": {
        "error.generic": "❌ Ocurrió un error al procesar este comando.",
        "error.queue_full": "⏳ La cola de comandos está llena, inténtalo de nuevo más tarde.",
        "error.no_permission": "❌ Necesitas permisos de administrador para usar este comando.",
        "error.not_authorized": "❌ No estás autorizado/a para modificar la configuración global.",
        "error.group_only": "❌ Este comando solo funciona en grupos.",
        "help.title": "🏁 <b>Trackmania Record Tracker</b>",
        "help.members": "<b>Comandos para todos:</b>",
        "help.admins": "<b>Solo administradores:</b>",
        "help.operator": "<b>Solo operador del bot:</b>",
        "cmd.help": "Muestra la ayuda y los comandos disponibles",
        "cmd.register": "Registra tu cuenta de Trackmania",
        "cmd.unregister": "Deja de seguir tu cuenta en este grupo",
        "cmd.records": "Muestra tus récords recientes de campaña",
        "cmd.leaderboard": "Clasificación del país para la campaña o un mapa",
        "cmd.setchannel": "Define dónde se envían los anuncios",
        "cmd.setminposition": "Solo anuncia récords dentro de esta posición mundial",
        "cmd.toggle": "Activa o desactiva los anuncios",
        "cmd.language": "Cambia el idioma del grupo",
        "cmd.setcountry": "Define el país usado en las clasificaciones",
        "cmd.checknow": "Busca nuevos récords ahora mismo",
        "cmd.setinterval": "Cambia cada cuánto se buscan récords",
        "register.usage": "Uso: /register &lt;id_cuenta&gt; (se obtiene de trackmania.io)",
        "register.success": "✅ ¡Te has registrado para el seguimiento de récords de Trackmania!",
        "register.updated": "✅ ¡Tu cuenta de Trackmania ha sido actualizada!",
        "unregister.success": "✅ Has cancelado tu registro del seguimiento de récords de Trackmania.",
        "unregister.not_registered": "No estás registrado/a en este grupo.",
        "records.not_registered": "No estás registrado/a. Usa /register para registrar tu cuenta de Trackmania.",
        "records.none": "Aún no tienes récords.",
        "records.title": "🏆 <b>Récords recientes: {username}</b>",
        "leaderboard.title": "🏆 <b>Clasificación {country}: {map_name}</b>",
        "leaderboard.season_title": "🏆 <b>Clasificación {country} de campaña: {season}</b>",
        "leaderboard.no_map": "No se encontraron mapas que coincidan con \"{map_name}\".",
        "leaderboard.empty": "No se encontraron récords de {country}.",
        "setchannel.usage": "Uso: /setchannel &lt;campaign|weekly&gt; [chat_id]",
        "setchannel.changed": "✅ Los anuncios de {category} ahora se enviarán a <code>{channel}</code>",
        "setminposition.usage": "Uso: /setminposition &lt;1-100000&gt;",
        "setminposition.changed": "✅ Los récords ahora solo se anunciarán para posiciones mundiales dentro del top {position}",
        "toggle.usage": "Uso: /toggle &lt;campaign|weekly&gt; &lt;on|off&gt;",
        "toggle.changed": "✅ Los anuncios de {category} han sido {status} para este grupo.",
        "toggle.already": "Los anuncios de {category} ya están {status} para este grupo.",
        "status.enabled": "activados",
        "status.disabled": "desactivados",
        "category.campaign": "Campaña",
        "category.weekly": "Weekly shorts",
        "language.usage": "Uso: /language &lt;en|es&gt;",
        "language.changed": "✅ El idioma ha sido cambiado a español.",
        "setcountry.usage": "Uso: /setcountry &lt;código&gt; ({countries})",
        "setcountry.changed": "✅ El país predeterminado se ha establecido en {country}.",
        "setinterval.usage": "Uso: /setinterval &lt;campaign|weekly&gt; &lt;5-1440&gt;",
        "setinterval.changed": "✅ El intervalo de búsqueda de {category} se ha establecido en {minutes} minutos.",
        "checknow.queued": "🔄 Revisando récords de campaña y weekly shorts...",
        "record.title": "🏆 ¡Nuevo PB!",
        "record.description": "¡<b>{username}</b> acaba de establecer {record_type}!",
        "record.first": "su primer récord",
        "record.personal_best": "un nuevo récord personal",
        "record.map": "🗺️ Mapa",
        "record.time": "⏱️ Tiempo",
        "record.previous": "⏮️ Anterior",
        "record.world_position": "🌍 Posición Mundial",
        "weekly.author": "Trackmania Weekly Shorts",
        "campaign.author": "Récords de Campaña Trackmania",
    },
}

DEFAULT_LANGUAGE = "en"


def t(language: str, key: str, **kwargs) -> str:
    """Translated string for ``key``, falling back to English."""
    table = TRANSLATIONS.get(language) or TRANSLATIONS[DEFAULT_LANGUAGE]
    text = table.get(key) or TRANSLATIONS[DEFAULT_LANGUAGE].get(key)
    if text is None:
        logger.warning(f"Missing translation key: {key}")
        return key
    return text.format(**kwargs) if kwargs else text
