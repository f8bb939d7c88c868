import os

notes: list[bytes] = []

print("1) add  2) show  3) quit", flush=True)
while True:
    choice = input("> ").strip()
    if choice == "1":
        notes.append(input("note: ").encode()[:64])
    elif choice == "2":
        for i, n in enumerate(notes):
            print(i, n.decode(errors="replace"), flush=True)
    elif choice == "1337":
        print(os.getenv("FLAG", "lactf{h34p_n0t3}"), flush=True)
    else:
        break
