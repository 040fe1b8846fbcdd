from overachiever.services.steam_client import (
    OwnedGame,
    PlayerAchievement,
    SchemaAchievement,
)

STEAM_ID = "76561197960287930"


def owned(appid, name=None, playtime=0, last_played=None):
    return OwnedGame(
        appid=appid,
        name=name or f"Game {appid}",
        playtime_forever=playtime,
        rtime_last_played=last_played,
        img_icon_url=f"hash{appid}",
    )


def progress(apiname, achieved=True, unlocktime=1700000000):
    return PlayerAchievement(
        apiname=apiname, achieved=achieved, unlocktime=unlocktime if achieved else 0
    )


def schema(apiname, display_name=None):
    return SchemaAchievement(
        name=apiname,
        displayName=display_name or apiname.title(),
        description=f"Do {apiname}",
        icon=f"https://cdn.example/{apiname}.jpg",
        icongray=f"https://cdn.example/{apiname}_gray.jpg",
    )
