# main.py
# DailyDose (KivyMD) launcher.
#
# - Run on desktop:   python main.py
# - Android:          Buildozer uses this file as the app entry point; the
#                     reminder service entry point is dailydose/service.py.

from dailydose.app import main

if __name__ == "__main__":
    main()
